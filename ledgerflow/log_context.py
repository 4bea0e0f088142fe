import uuid
import logging
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)

_thread_locals = threading.local()


class OperationIDFilter(logging.Filter):
    def filter(self, record):
        record.operation_id = get_current_operation_id()
        return True


@contextmanager
def operation_context(operation_id=None):
    """Tag every log record emitted in this thread with one operation id."""
    previous = getattr(_thread_locals, 'operation_id', None)
    operation_id = operation_id or str(uuid.uuid4())
    _thread_locals.operation_id = operation_id
    try:
        yield operation_id
    finally:
        _thread_locals.operation_id = previous


def get_current_operation_id():
    return getattr(_thread_locals, 'operation_id', None) or 'no-id'
