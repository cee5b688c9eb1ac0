"""Service result envelope and coded messages.

Every public service operation returns a `ServiceResult`. A result is
created empty (`PENDING`) and moved exactly once to one of three states:

- `SUCCESS` via `set_data`: carries the payload.
- `FAILURE` via `fail`: carries an error message, never a payload.
- `WARNING` via `warning`: partial success; the caller has another step
  to take (for example an MFA challenge was issued). The hint for that
  step travels in the extra-data bag, not in the payload.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

from pydantic import BaseModel

from .errors import ServiceError

T = TypeVar("T")


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ResultStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class ServiceMessage(BaseModel):
    """A (code, description, severity) triple attached to a result."""

    model_config = {"frozen": True}

    code: Optional[str] = None
    description: str
    severity: Severity = Severity.INFO

    @classmethod
    def error(cls, code: str, description: str) -> "ServiceMessage":
        return cls(code=code, description=description, severity=Severity.ERROR)

    @classmethod
    def warn(cls, description: str, code: Optional[str] = None) -> "ServiceMessage":
        return cls(code=code, description=description, severity=Severity.WARNING)

    @classmethod
    def info(cls, description: str, code: Optional[str] = None) -> "ServiceMessage":
        return cls(code=code, description=description, severity=Severity.INFO)


class PayloadItem(BaseModel):
    """Named entry in the extra-data bag."""

    model_config = {"frozen": True}

    name: str
    value: Any = None


class ServiceResult(Generic[T]):
    """Success/failure/warning envelope returned by service operations."""

    def __init__(self):
        self.status = ResultStatus.PENDING
        self.messages: list[ServiceMessage] = []
        self.extra_data: list[PayloadItem] = []
        self._data: Optional[T] = None

    def __repr__(self) -> str:
        return f"ServiceResult(status={self.status.value}, code={self.result_code!r})"

    @classmethod
    def success(cls, payload: T, message: Union[ServiceMessage, str, None] = None) -> "ServiceResult[T]":
        return cls().set_data(payload, message)

    @classmethod
    def failure(cls, error: Union[ServiceMessage, ServiceError]) -> "ServiceResult[T]":
        return cls().fail(error)

    def _transition(self, status: ResultStatus) -> None:
        assert self.status is ResultStatus.PENDING, f"result already settled as {self.status.value}"
        self.status = status

    def set_data(self, payload: T, message: Union[ServiceMessage, str, None] = None) -> "ServiceResult[T]":
        if payload is None:
            raise ValueError("a successful result must carry data")
        self._transition(ResultStatus.SUCCESS)
        self._data = payload
        if message is not None:
            self.messages.append(_as_message(message, Severity.INFO))
        return self

    def fail(self, error: Union[ServiceMessage, ServiceError]) -> "ServiceResult[T]":
        """Settle as failed; accepts a message or a coded exception."""
        self._transition(ResultStatus.FAILURE)
        self._data = None
        if isinstance(error, ServiceMessage):
            message = error if error.severity is Severity.ERROR else error.model_copy(update={"severity": Severity.ERROR})
        else:
            message = ServiceMessage.error(getattr(error, "code", None) or ServiceError.default_code,
                                           getattr(error, "description", None) or str(error))
        self.messages.append(message)
        return self

    def warning(self, message: Union[ServiceMessage, str], data: Optional[T] = None) -> "ServiceResult[T]":
        self._transition(ResultStatus.WARNING)
        self._data = data
        self.messages.append(_as_message(message, Severity.WARNING))
        return self

    @property
    def data(self) -> Optional[T]:
        return self._data

    @property
    def has_failed(self) -> bool:
        return self.status is ResultStatus.FAILURE

    @property
    def succeeded(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    @property
    def is_warning(self) -> bool:
        return self.status is ResultStatus.WARNING

    @property
    def result_code(self) -> Optional[str]:
        """Code of the first error message, if any."""
        for message in self.messages:
            if message.severity is Severity.ERROR:
                return message.code
        return None

    def add_extra(self, name: str, value: Any) -> "ServiceResult[T]":
        """Add or replace a named extra-data item, keeping insertion order."""
        item = PayloadItem(name=name, value=value)
        for idx, existing in enumerate(self.extra_data):
            if existing.name == name:
                self.extra_data[idx] = item
                return self
        self.extra_data.append(item)
        return self

    def extra(self, name: str, default: Any = None) -> Any:
        for item in self.extra_data:
            if item.name == name:
                return item.value
        return default

    def to_dict(self) -> dict:
        data = self._data
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        return {
            "status": self.status.value,
            "has_failed": self.has_failed,
            "data": data,
            "messages": [m.model_dump(mode="json") for m in self.messages],
            "extra_data": {item.name: item.value for item in self.extra_data},
        }


def _as_message(message: Union[ServiceMessage, str], severity: Severity) -> ServiceMessage:
    if isinstance(message, ServiceMessage):
        return message
    return ServiceMessage(description=message, severity=severity)
