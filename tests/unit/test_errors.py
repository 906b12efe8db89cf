"""
Error taxonomy: every error carries a kind, a stable code, a numeric code
and structured context.
"""

import pytest

from credit_kernel import exceptions
from credit_kernel.exceptions import (
    BatchPartialFailureError,
    CreditKernelError,
    ErrorKind,
    InsufficientBalanceError,
    InvalidParameterError,
    NUMERIC_CODES,
    OperationLockedError,
    VersionConflictError,
)


def _concrete_error_classes():
    return [
        obj for obj in vars(exceptions).values()
        if isinstance(obj, type)
        and issubclass(obj, CreditKernelError)
        and "kind" in vars(obj)
    ]


class TestErrorCodes:

    def test_every_kind_has_a_numeric_code(self):
        assert set(NUMERIC_CODES) == set(ErrorKind)

    @pytest.mark.parametrize(
        "kind, numeric",
        [
            (ErrorKind.ACCOUNT_NOT_FOUND, 10001),
            (ErrorKind.INSUFFICIENT_BALANCE, 10003),
            (ErrorKind.INSUFFICIENT_FROZEN, 10017),
            (ErrorKind.OPERATION_LOCKED, 10024),
            (ErrorKind.CREDITS_EXPIRED, 10026),
        ],
    )
    def test_stable_numeric_codes(self, kind, numeric):
        assert kind.numeric_code == numeric

    def test_code_mirrors_kind_on_every_class(self):
        classes = _concrete_error_classes()
        assert len(classes) > 10
        for cls in classes:
            assert cls.code == cls.kind.value, cls.__name__

    def test_code_is_available_without_an_instance(self):
        assert VersionConflictError.code == "VERSION_CONFLICT"


class TestErrorContext:

    def test_insufficient_balance_context(self):
        err = InsufficientBalanceError("u1:POINTS", 500, 120)
        assert err.context == {"account_ref": "u1:POINTS", "required": 500, "available": 120}
        assert "required 500" in str(err)

    def test_to_dict(self):
        err = OperationLockedError("u1:POINTS", 0.5)
        data = err.to_dict()
        assert data["kind"] == "OPERATION_LOCKED"
        assert data["code"] == "OPERATION_LOCKED"
        assert data["error_code"] == 10024
        assert data["context"]["timeout_seconds"] == 0.5

    def test_batch_partial_failure_summarises_items(self):
        failure = InvalidParameterError("amount", 0, "must be strictly positive")
        err = BatchPartialFailureError([("op-1", failure)], succeeded_count=3)
        context = err.context
        assert context["succeeded_count"] == 3
        assert context["failed"][0]["kind"] == "INVALID_PARAMETER"

    def test_all_errors_share_the_base(self):
        for cls in _concrete_error_classes():
            assert issubclass(cls, CreditKernelError)
            assert issubclass(cls, Exception)
