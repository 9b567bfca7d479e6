import importlib
import warnings
from uuid import uuid4

import pytest

from clubdk_api.api import errors
from clubdk_api.services.exceptions import (
    InsufficientPointsError,
    InvalidTransitionError,
    LedgerConsistencyError,
    LedgerValidationError,
    NotFoundError,
)


@pytest.mark.parametrize(
    ("exc", "status_code", "code"),
    [
        (NotFoundError("Order", uuid4()), 404, "not_found"),
        (InvalidTransitionError("payment", "Pago", "Pendente"), 409, "invalid_transition"),
        (InsufficientPointsError(uuid4(), 10, 100), 409, "insufficient_points"),
        (LedgerConsistencyError("drift"), 500, "consistency_error"),
        (LedgerValidationError("bad input"), 422, "validation_error"),
    ],
)
def test_http_error_for_maps_ledger_errors(exc, status_code, code) -> None:
    http_error = errors.http_error_for(exc)

    assert http_error.status_code == status_code
    assert http_error.detail["code"] == code
    assert http_error.detail["message"] == str(exc)


def test_error_mapping_imports_without_deprecation_warnings() -> None:
    with warnings.catch_warnings():
        warnings.simplefilter("error", DeprecationWarning)
        importlib.reload(errors)
