"""
Uniform result envelope returned by every public service operation, and the
decorator that turns exceptions into envelopes at the boundary.
"""
from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm.exc import StaleDataError

from telehealth_billing.extensions import db
from .errors import ServiceError

log = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An internal error occurred. Please try again later."


@dataclass
class ServiceResult:
    data: Any = None
    message: str = "OK"
    status_code: int = 200
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @classmethod
    def success(cls, data: Any = None, message: str = "OK", *, status_code: int = 200,
                meta: Optional[Dict[str, Any]] = None) -> "ServiceResult":
        return cls(data=data, message=message, status_code=status_code, meta=meta or {})

    @classmethod
    def created(cls, data: Any = None, message: str = "Created") -> "ServiceResult":
        return cls(data=data, message=message, status_code=201)

    @classmethod
    def failure(cls, message: str, status_code: int) -> "ServiceResult":
        return cls(data=None, message=message, status_code=status_code)

    @classmethod
    def not_implemented(cls, operation: str) -> "ServiceResult":
        return cls(data=None, message=f"{operation} is not implemented", status_code=501)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "message": self.message,
            "status_code": self.status_code,
            "meta": dict(self.meta),
        }


def _rollback() -> None:
    try:
        db.session.rollback()
    except Exception:  # pragma: no cover - rollback on a dead connection
        log.exception("session rollback failed")


def service_operation(func: Callable[..., ServiceResult]) -> Callable[..., ServiceResult]:
    """
    Boundary wrapper: domain errors become envelopes with their status code,
    lost optimistic-lock races become 409, anything else is logged and
    returned as a generic 500. The session is rolled back on every failure.
    """

    @functools.wraps(func)
    def wrapper(*args, **kwargs) -> ServiceResult:
        try:
            return func(*args, **kwargs)
        except ServiceError as exc:
            _rollback()
            log.info("%s rejected (%s): %s", func.__name__, exc.status_code, exc.message)
            return ServiceResult.failure(exc.message, exc.status_code)
        except StaleDataError:
            _rollback()
            log.warning("%s lost a concurrent update", func.__name__)
            return ServiceResult.failure("The record was modified concurrently; reload and retry.", 409)
        except Exception:
            _rollback()
            log.exception("%s failed", func.__name__)
            return ServiceResult.failure(GENERIC_ERROR_MESSAGE, 500)

    return wrapper
