"""
Dunning: walk overdue invoices through escalating collection levels.

Each invoice is handled in its own transaction. The DunningRecord commits
first; notifications are sent afterwards and only flip the per-channel sent
flags, so a delivery failure never undoes the record and can be retried.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Sequence

from django.db import IntegrityError, connections, transaction
from django.db.models import Q
from django.template import Template, TemplateSyntaxError
from django.utils import timezone

from ledgerflow.log_context import operation_context

from ..audit_logging import audit_logger
from ..concurrency import run_with_retry
from ..conf import ledger_setting
from ..errors import ExternalDeliveryFailure, NotFoundError, ValidationError
from ..models import (
    DUNNING_LEVEL_ORDER,
    Company,
    DunningConfiguration,
    DunningLevel,
    DunningLevelConfig,
    DunningRecord,
    Invoice,
    InvoiceActivity,
)
from ..notifications import NotificationDispatcher, render_message
from .invoice_service import InvoiceService

logger = logging.getLogger(__name__)

CHANNELS = (DunningRecord.Channel.EMAIL, DunningRecord.Channel.SMS, DunningRecord.Channel.LETTER)

# Applied when the company has no active default configuration.
DEFAULT_SCHEDULE = (
    (DunningLevel.FIRST_REMINDER, 1),
    (DunningLevel.SECOND_REMINDER, 8),
    (DunningLevel.FINAL_NOTICE, 15),
    (DunningLevel.LEGAL_ACTION, 31),
)

TEMPLATE_FIELDS = ('email_template', 'sms_template', 'letter_template')

DEFAULT_CHANNELS = {
    DunningLevel.FIRST_REMINDER: [DunningRecord.Channel.EMAIL],
    DunningLevel.SECOND_REMINDER: [DunningRecord.Channel.EMAIL, DunningRecord.Channel.SMS],
    DunningLevel.FINAL_NOTICE: [DunningRecord.Channel.EMAIL, DunningRecord.Channel.LETTER],
    DunningLevel.LEGAL_ACTION: [DunningRecord.Channel.EMAIL, DunningRecord.Channel.LETTER],
}


@dataclass(frozen=True)
class LevelRule:
    level: str
    days_after_due: int
    templates: Dict[str, str] = field(default_factory=dict)

    @property
    def channels(self) -> List[str]:
        configured = [channel for channel in CHANNELS if self.templates.get(channel)]
        return configured or list(DEFAULT_CHANNELS[self.level])


@dataclass
class DunningItemResult:
    invoice_id: int
    invoice_number: str
    outcome: str
    level: Optional[str] = None
    record_id: Optional[int] = None
    message: str = ""


@dataclass
class DunningRunSummary:
    run_id: str
    as_of: date
    items: List[DunningItemResult] = field(default_factory=list)
    cancelled: bool = False

    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"

    def _count(self, outcome: str) -> int:
        return sum(1 for item in self.items if item.outcome == outcome)

    @property
    def created(self) -> int:
        return self._count(self.CREATED)

    @property
    def skipped(self) -> int:
        return self._count(self.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(self.FAILED)

    @property
    def processed(self) -> int:
        return len(self.items)


class DunningService:
    @staticmethod
    def get_schedule(company: Company) -> List[LevelRule]:
        """Active levels of the company's default configuration, in escalation order."""
        configuration = (
            DunningConfiguration.objects
            .filter(company=company, is_default=True, is_active=True)
            .order_by('-updated_at', '-id')
            .first()
        )
        rules = []
        if configuration is not None:
            for level in configuration.levels.filter(is_active=True).order_by('days_after_due'):
                rules.append(LevelRule(
                    level=level.level,
                    days_after_due=level.days_after_due,
                    templates={
                        DunningRecord.Channel.EMAIL: level.email_template,
                        DunningRecord.Channel.SMS: level.sms_template,
                        DunningRecord.Channel.LETTER: level.letter_template,
                    },
                ))
        if not rules:
            rules = [LevelRule(level=level, days_after_due=days) for level, days in DEFAULT_SCHEDULE]
        return rules

    @staticmethod
    def level_for(schedule: Sequence[LevelRule], days_overdue: int) -> Optional[LevelRule]:
        """The highest level whose threshold has been crossed."""
        reached = None
        for rule in schedule:
            if days_overdue >= rule.days_after_due:
                reached = rule
        return reached

    @staticmethod
    def next_rule(schedule: Sequence[LevelRule], rule: LevelRule) -> Optional[LevelRule]:
        index = schedule.index(rule)
        return schedule[index + 1] if index + 1 < len(schedule) else None

    @classmethod
    def process_dunning(cls, company: Company, user=None, as_of: Optional[date] = None,
                        cancel_event: Optional[threading.Event] = None,
                        dispatcher: Optional[NotificationDispatcher] = None) -> DunningRunSummary:
        """
        Record the dunning level reached by every overdue open invoice.

        Re-running on unchanged data creates nothing: a level is recorded once
        per invoice per due date. Setting ``cancel_event`` stops scheduling
        further invoices; invoices already in flight finish or roll back.

        Returns:
            A DunningRunSummary with one item per processed invoice.
        """
        as_of = as_of or timezone.localdate()
        dispatcher = dispatcher or NotificationDispatcher()
        max_workers = max(1, int(ledger_setting("DUNNING_MAX_WORKERS")))

        with operation_context() as run_id:
            schedule = cls.get_schedule(company)
            summary = DunningRunSummary(run_id=run_id, as_of=as_of)
            candidates = list(
                Invoice.objects
                .filter(
                    company=company,
                    status__in=Invoice.OPEN_STATUSES,
                    due_date__lt=as_of,
                    outstanding_amount__gt=0,
                )
                .order_by('due_date', 'id')
                .values_list('id', 'invoice_number')
            )
            logger.info(f"Dunning run for company {company.pk} as of {as_of}: {len(candidates)} overdue invoice(s)")

            def run_one(invoice_id: int, invoice_number: str) -> Optional[DunningItemResult]:
                if cancel_event is not None and cancel_event.is_set():
                    return None
                return cls._process_one(company, user, invoice_id, invoice_number, as_of, schedule, dispatcher)

            if max_workers == 1:
                for invoice_id, invoice_number in candidates:
                    result = run_one(invoice_id, invoice_number)
                    if result is None:
                        summary.cancelled = True
                        break
                    summary.items.append(result)
            else:
                def run_in_worker(invoice_id: int, invoice_number: str) -> Optional[DunningItemResult]:
                    with operation_context(run_id):
                        try:
                            return run_one(invoice_id, invoice_number)
                        finally:
                            connections.close_all()

                with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dunning") as pool:
                    futures = [pool.submit(run_in_worker, invoice_id, number) for invoice_id, number in candidates]
                    for future in futures:
                        result = future.result()
                        if result is None:
                            summary.cancelled = True
                        else:
                            summary.items.append(result)

            logger.info(
                f"Dunning run {run_id} finished: created={summary.created} skipped={summary.skipped} "
                f"failed={summary.failed} cancelled={summary.cancelled}"
            )
        return summary

    @classmethod
    def preview_dunning(cls, company: Company, as_of: Optional[date] = None) -> List[DunningItemResult]:
        """What process_dunning would record, without writing anything."""
        as_of = as_of or timezone.localdate()
        schedule = cls.get_schedule(company)
        preview = []
        invoices = Invoice.objects.filter(
            company=company,
            status__in=Invoice.OPEN_STATUSES,
            due_date__lt=as_of,
            outstanding_amount__gt=0,
        ).order_by('due_date', 'id')
        for invoice in invoices:
            days_overdue = invoice.days_overdue(as_of)
            rule = cls.level_for(schedule, days_overdue)
            if rule is None:
                outcome, message = DunningRunSummary.SKIPPED, "Below the first threshold"
            elif DunningRecord.objects.filter(invoice=invoice, due_date=invoice.due_date, level=rule.level).exists():
                outcome, message = DunningRunSummary.SKIPPED, "Level already recorded"
            else:
                outcome, message = DunningRunSummary.CREATED, f"{days_overdue} day(s) overdue"
            preview.append(DunningItemResult(invoice.pk, invoice.invoice_number, outcome,
                                             level=rule.level if rule else None, message=message))
        return preview

    @classmethod
    def _process_one(cls, company, user, invoice_id, invoice_number, as_of, schedule, dispatcher) -> DunningItemResult:
        try:
            record, rule, reason = run_with_retry(cls._record_level, company, user, invoice_id, as_of, schedule)
        except Exception as exc:
            logger.exception(f"Dunning failed for invoice {invoice_number}: {exc}")
            audit_logger.error("dunning.failed", exception=exc, company_id=company.pk, invoice_id=invoice_id, as_of=as_of)
            return DunningItemResult(invoice_id, invoice_number, DunningRunSummary.FAILED, message=str(exc))

        if record is None:
            return DunningItemResult(invoice_id, invoice_number, DunningRunSummary.SKIPPED,
                                     level=rule.level if rule else None, message=reason)

        failures = cls._deliver(record, rule, dispatcher)
        message = f"{record.get_level_display()} recorded"
        if failures:
            message += f"; delivery failed: {', '.join(failures)}"
        return DunningItemResult(invoice_id, invoice_number, DunningRunSummary.CREATED,
                                 level=record.level, record_id=record.pk, message=message)

    @classmethod
    @transaction.atomic
    def _record_level(cls, company, user, invoice_id, as_of, schedule):
        invoice = InvoiceService.get_invoice(company, invoice_id, lock=True)
        if not invoice.is_overdue(as_of):
            return None, None, "Invoice is no longer overdue"

        days_overdue = invoice.days_overdue(as_of)
        rule = cls.level_for(schedule, days_overdue)
        if rule is None:
            return None, None, f"{days_overdue} day(s) overdue, below the first threshold"

        cycle = DunningRecord.objects.filter(invoice=invoice, due_date=invoice.due_date)
        if cycle.filter(level=rule.level).exists():
            return None, rule, "Level already recorded"
        later_levels = DUNNING_LEVEL_ORDER[DUNNING_LEVEL_ORDER.index(rule.level) + 1:]
        if cycle.filter(level__in=later_levels).exists():
            return None, rule, "A later level is already recorded"

        following = cls.next_rule(schedule, rule)
        try:
            with transaction.atomic():
                record = DunningRecord.objects.create(
                    company=company,
                    invoice=invoice,
                    customer_id=invoice.customer_id,
                    level=rule.level,
                    due_date=invoice.due_date,
                    days_overdue=days_overdue,
                    outstanding_amount=invoice.outstanding_amount,
                    channels=rule.channels,
                    next_dunning_date=(invoice.due_date + timedelta(days=following.days_after_due)) if following else None,
                    created_by=user,
                )
        except IntegrityError:
            # Another run recorded this level first.
            return None, rule, "Level already recorded"

        InvoiceService.log_activity(
            invoice, user, InvoiceActivity.ActionType.DUNNING,
            f"{record.get_level_display()} reached after {days_overdue} day(s) overdue",
            metadata={'dunning_record_id': record.pk, 'level': record.level},
        )
        logger.info(f"Dunning {record.level} recorded for invoice {invoice.invoice_number} ({days_overdue} days overdue)")
        return record, rule, ""

    @classmethod
    def _deliver(cls, record: DunningRecord, rule: Optional[LevelRule], dispatcher: NotificationDispatcher,
                 channels: Optional[List[str]] = None) -> List[str]:
        """Send each pending channel, flipping its sent flag on success. Returns the failed channels."""
        failures = []
        templates = rule.templates if rule else {}
        for channel in channels if channels is not None else record.channels:
            try:
                dispatcher.send(record, channel, render_message(record, templates.get(channel, "")))
            except ExternalDeliveryFailure as exc:
                logger.warning(f"Dunning {channel} for invoice {record.invoice.invoice_number} failed: {exc.message}")
                failures.append(channel)
                continue
            except Exception as exc:
                logger.exception(f"Dunning {channel} for invoice {record.invoice.invoice_number} failed: {exc}")
                audit_logger.error("dunning.delivery_failed", exception=exc, company_id=record.company_id,
                                   dunning_record_id=record.pk, channel=channel)
                failures.append(channel)
                continue

            flag = record.sent_flag(channel)
            try:
                run_with_retry(cls._mark_sent, record.pk, flag)
            except Exception as exc:
                # Sent but not marked: a retry resends this channel.
                logger.exception(f"Could not mark dunning {channel} sent for record {record.pk}: {exc}")
                failures.append(channel)
                continue
            setattr(record, flag, True)

        if failures:
            response = f"Delivery failed on {', '.join(failures)} at {timezone.now().isoformat()}"
            record.response = response
            try:
                run_with_retry(cls._save_response, record.pk, response)
            except Exception as exc:
                logger.exception(f"Could not store delivery response for dunning record {record.pk}: {exc}")
        return failures

    @staticmethod
    def _mark_sent(record_id: int, flag: str) -> None:
        DunningRecord.objects.filter(pk=record_id).update(**{flag: True, 'updated_at': timezone.now()})

    @staticmethod
    def _save_response(record_id: int, response: str) -> None:
        DunningRecord.objects.filter(pk=record_id).update(response=response, updated_at=timezone.now())

    @classmethod
    def retry_failed_notifications(cls, company: Company,
                                   dispatcher: Optional[NotificationDispatcher] = None) -> Dict[str, int]:
        """Resend every channel of the company's dunning records whose sent flag is still false."""
        dispatcher = dispatcher or NotificationDispatcher()
        schedule = {rule.level: rule for rule in cls.get_schedule(company)}
        records = (
            DunningRecord.objects
            .filter(company=company)
            .filter(Q(email_sent=False) | Q(sms_sent=False) | Q(letter_sent=False))
            .select_related('invoice', 'customer')
            .order_by('id')
        )
        counts = {"records": 0, "sent": 0, "failed": 0}
        with operation_context():
            for record in records:
                pending = record.pending_channels
                if not pending:
                    continue
                counts["records"] += 1
                failures = cls._deliver(record, schedule.get(record.level), dispatcher, channels=pending)
                counts["failed"] += len(failures)
                counts["sent"] += len(pending) - len(failures)
            logger.info(f"Dunning notification retry for company {company.pk}: {counts}")
        return counts

    @staticmethod
    @transaction.atomic
    def configure_dunning(company: Company, name: str, levels: List[Dict[str, Any]], is_default: bool = True,
                          description: str = "") -> DunningConfiguration:
        """
        Create a dunning configuration with its levels.

        Thresholds must increase with the escalation order of the levels.
        """
        errors = {}
        if not name:
            errors['name'] = 'Name is required'
        if not levels:
            errors['levels'] = 'At least one level is required'

        seen = set()
        parsed = []
        for i, entry in enumerate(levels or []):
            level = entry.get('level')
            days = entry.get('days_after_due')
            if level not in DunningLevel.values:
                errors[f'levels.{i}.level'] = f"Unknown dunning level '{level}'"
                continue
            if level in seen:
                errors[f'levels.{i}.level'] = f"Level '{level}' is configured twice"
                continue
            if not isinstance(days, int) or isinstance(days, bool) or days < 0:
                errors[f'levels.{i}.days_after_due'] = 'Days after due must be a non-negative integer'
                continue
            seen.add(level)
            for key in TEMPLATE_FIELDS:
                try:
                    Template(entry.get(key) or '')
                except TemplateSyntaxError as exc:
                    errors[f'levels.{i}.{key}'] = f"Invalid template: {exc}"
            parsed.append(entry)

        parsed.sort(key=lambda entry: DUNNING_LEVEL_ORDER.index(entry['level']))
        for earlier, later in zip(parsed, parsed[1:]):
            if later['days_after_due'] <= earlier['days_after_due']:
                errors['levels'] = 'Days after due must increase with each escalation level'
                break
        if errors:
            raise ValidationError(errors=errors)

        if is_default:
            DunningConfiguration.objects.filter(company=company, is_default=True).update(is_default=False)

        configuration = DunningConfiguration.objects.create(
            company=company, name=name, description=description, is_default=is_default,
        )
        for entry in parsed:
            DunningLevelConfig.objects.create(
                configuration=configuration,
                level=entry['level'],
                days_after_due=entry['days_after_due'],
                email_template=entry.get('email_template', ''),
                sms_template=entry.get('sms_template', ''),
                letter_template=entry.get('letter_template', ''),
            )
        logger.info(f"Dunning configuration '{name}' created for company {company.pk} with {len(parsed)} level(s)")
        return configuration

    @staticmethod
    def get_company(slug: str) -> Company:
        company = Company.objects.filter(slug=slug).first()
        if company is None:
            raise NotFoundError("Company not found", slug=slug)
        return company
