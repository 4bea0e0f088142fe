import logging
import re

from django.db import IntegrityError, transaction
from django.db.models import F

from ..errors import NotFoundError, SeriesExhausted, SeriesNotFound, ValidationError
from ..models import Company, NumberingSeries

logger = logging.getLogger(__name__)

DEFAULT_PREFIXES = {
    NumberingSeries.DocumentType.INVOICE: "INV-",
    NumberingSeries.DocumentType.PAYMENT: "PAY-",
    NumberingSeries.DocumentType.STATEMENT: "STMT-",
}

PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9/_\-.]{0,20}$")
MAX_PAD_LENGTH = 18


class NumberingService:
    """Issues document numbers from per-tenant series, each number exactly once."""

    @staticmethod
    @transaction.atomic
    def next_number(series_id: int) -> str:
        """
        Claim the next number of a series.

        The increment is a single conditional UPDATE, so two concurrent callers
        can never read the same counter value: the second one blocks on the row
        lock until the first commits. The row is re-read inside the same
        transaction to format the claimed value.

        Raises:
            SeriesNotFound: the series is missing or inactive.
            SeriesExhausted: the pad length cannot represent another number.
        """
        series = NumberingSeries.objects.filter(pk=series_id).only("id", "is_active", "pad_length").first()
        if series is None or not series.is_active:
            raise SeriesNotFound(series_id=series_id)

        updated = NumberingSeries.objects.filter(
            pk=series_id,
            is_active=True,
            current_number__lte=series.max_number,
        ).update(current_number=F("current_number") + 1)

        if not updated:
            series.refresh_from_db()
            if not series.is_active:
                raise SeriesNotFound(series_id=series_id)
            raise SeriesExhausted(
                f"Series {series_id} reached {series.max_number} with pad length {series.pad_length}",
                series_id=series_id,
            )

        series.refresh_from_db()
        issued = series.current_number - 1
        number = series.format_number(issued)
        logger.debug(f"Issued {number} from series {series_id}")
        return number

    @classmethod
    def next_number_for(cls, company: Company, document_type: str) -> str:
        """Issue a number from the tenant's default series for a document type."""
        series = cls.get_default_series(company, document_type)
        return cls.next_number(series.pk)

    @staticmethod
    def _find_default(company: Company, document_type: str):
        return (
            NumberingSeries.objects
            .filter(company=company, document_type=document_type, is_default=True, is_active=True)
            .order_by("id")
            .first()
        )

    @staticmethod
    def _lock_company(company: Company) -> None:
        # Serializes default-series changes for one tenant.
        Company.objects.select_for_update().filter(pk=company.pk).first()

    @classmethod
    @transaction.atomic
    def get_default_series(cls, company: Company, document_type: str) -> NumberingSeries:
        if document_type not in NumberingSeries.DocumentType.values:
            raise ValidationError(errors={"document_type": f"Unknown document type '{document_type}'"})

        series = cls._find_default(company, document_type)
        if series is not None:
            return series

        cls._lock_company(company)
        series = cls._find_default(company, document_type)
        if series is not None:
            return series
        try:
            with transaction.atomic():
                series = NumberingSeries.objects.create(
                    company=company,
                    series_name=f"Default {NumberingSeries.DocumentType(document_type).label}",
                    document_type=document_type,
                    prefix=DEFAULT_PREFIXES[document_type],
                    is_default=True,
                )
        except IntegrityError:
            # Another transaction created the default first.
            series = cls._find_default(company, document_type)
            if series is None:
                raise
            return series
        logger.info(f"Created default {document_type} series for company {company.pk}")
        return series

    @classmethod
    @transaction.atomic
    def create_series(cls, company: Company, series_name: str, prefix: str, document_type: str = NumberingSeries.DocumentType.INVOICE,
                      pad_length: int = 6, suffix: str = "", start_number: int = 1, is_default: bool = False) -> NumberingSeries:
        errors = {}
        if not series_name:
            errors["series_name"] = "Series name is required"
        if not PREFIX_PATTERN.match(prefix or ""):
            errors["prefix"] = "Prefix may contain letters, digits and - _ / . only (max 20)"
        if not PREFIX_PATTERN.match(suffix or ""):
            errors["suffix"] = "Suffix may contain letters, digits and - _ / . only (max 20)"
        if not 1 <= pad_length <= MAX_PAD_LENGTH:
            errors["pad_length"] = f"Pad length must be between 1 and {MAX_PAD_LENGTH}"
        elif not 1 <= start_number <= 10 ** pad_length - 1:
            errors["start_number"] = "Start number must fit within the pad length"
        if document_type not in NumberingSeries.DocumentType.values:
            errors["document_type"] = f"Unknown document type '{document_type}'"
        if errors:
            raise ValidationError(errors=errors)

        if is_default:
            cls._lock_company(company)
            NumberingSeries.objects.filter(
                company=company, document_type=document_type, is_default=True,
            ).update(is_default=False)

        series = NumberingSeries.objects.create(
            company=company,
            series_name=series_name,
            document_type=document_type,
            prefix=prefix,
            pad_length=pad_length,
            suffix=suffix,
            current_number=start_number,
            is_default=is_default,
        )
        logger.info(f"Numbering series {series.pk} ({prefix}) created for company {company.pk}")
        return series

    @staticmethod
    def deactivate_series(company: Company, series_id: int) -> NumberingSeries:
        series = NumberingSeries.objects.filter(company=company, pk=series_id).first()
        if series is None:
            raise NotFoundError("Numbering series not found", series_id=series_id)
        series.is_active = False
        series.save(update_fields=["is_active", "updated_at"])
        return series
