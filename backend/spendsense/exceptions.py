"""
Error taxonomy for the merchant intelligence engine.

Input errors are rejected before anything is written. Store errors carry a
``retryable`` flag so callers can decide whether to re-issue the request.
"""

from contextlib import contextmanager
import logging

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError, TimeoutError

logger = logging.getLogger(__name__)


class MerchantEngineError(Exception):
    """Base class for engine errors."""


class InvalidInputError(MerchantEngineError, ValueError):
    """Malformed input rejected before any processing."""


class InvalidThresholdError(InvalidInputError):
    def __init__(self, threshold):
        super().__init__(f"Similarity threshold must be in (0, 1], got {threshold!r}")
        self.threshold = threshold


class AccountNotFoundError(InvalidInputError):
    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class MerchantGroupNotFoundError(InvalidInputError):
    def __init__(self, group_id: str):
        super().__init__(f"Merchant group {group_id} not found")
        self.group_id = group_id


class MappingNotFoundError(InvalidInputError):
    def __init__(self, mapping_id: str):
        super().__init__(f"Merchant mapping {mapping_id} not found")
        self.mapping_id = mapping_id


class RecurringPatternNotFoundError(InvalidInputError):
    def __init__(self, pattern_id: str):
        super().__init__(f"Recurring pattern {pattern_id} not found")
        self.pattern_id = pattern_id


class GroupInUseError(MerchantEngineError):
    """A merchant group cannot be deleted while mappings or patterns reference it."""

    def __init__(self, group_id: str, mapping_count: int, pattern_count: int = 0):
        super().__init__(
            f"Merchant group {group_id} still has {mapping_count} mapping(s) and "
            f"{pattern_count} recurring pattern(s); regroup or merge them first"
        )
        self.group_id = group_id
        self.mapping_count = mapping_count
        self.pattern_count = pattern_count


class StoreError(MerchantEngineError):
    """Failure talking to the relational store."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class StoreTimeoutError(StoreError):
    def __init__(self, message: str):
        super().__init__(message, retryable=True)


@contextmanager
def store_errors(operation: str):
    """Translate SQLAlchemy failures raised inside the block into StoreError."""
    try:
        yield
    except MerchantEngineError:
        raise
    except TimeoutError as e:
        logger.error("Store call timed out during %s: %s", operation, e)
        raise StoreTimeoutError(f"{operation} timed out") from e
    except OperationalError as e:
        logger.error("Store unavailable during %s: %s", operation, e)
        if "timeout" in str(e).lower() or "locked" in str(e).lower():
            raise StoreTimeoutError(f"{operation} timed out") from e
        raise StoreError(f"{operation} failed: store unavailable") from e
    except IntegrityError as e:
        logger.error("Constraint violation during %s: %s", operation, e)
        raise StoreError(f"{operation} failed: constraint violation", retryable=False) from e
    except SQLAlchemyError as e:
        logger.error("Store error during %s: %s", operation, e)
        raise StoreError(f"{operation} failed") from e
