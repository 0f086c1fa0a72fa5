import pytest
from fastapi import HTTPException

from zenith.errors import (
    CatalogError, FormatMismatch, OracleError, RangeOverflow, ZenithError,
    bad_request, map_kernel_error
)


@pytest.mark.parametrize("error,status,code", [
    (FormatMismatch("bad size"), 500, "KERNEL.FORMAT_MISMATCH"),
    (RangeOverflow("too wide"), 500, "CODEC.RANGE_OVERFLOW"),
    (OracleError("no data"), 503, "ORACLE.FAILURE"),
    (ValueError("not a number"), 400, "INPUT.INVALID"),
    (RuntimeError("boom"), 500, "SERVER.ERROR"),
])
def test_map_kernel_error(error, status, code):
    with pytest.raises(HTTPException) as exc:
        map_kernel_error(error, context="test")
    assert exc.value.status_code == status
    assert exc.value.detail["code"] == code
    assert exc.value.detail["tip"]


def test_bad_request_detail():
    with pytest.raises(HTTPException) as exc:
        bad_request("INPUT.INVALID", "Invalid", "jd missing", "pass jd")
    assert exc.value.status_code == 400
    assert exc.value.detail == {
        "code": "INPUT.INVALID", "title": "Invalid", "detail": "jd missing", "tip": "pass jd"
    }


def test_error_context():
    error = OracleError("no ephemeris", body_id=599, jd=2451545.0)
    assert str(error) == "no ephemeris"
    assert error.to_dict() == {
        "code": "ORACLE.FAILURE", "detail": "no ephemeris", "body_id": 599, "jd": 2451545.0
    }


def test_hierarchy():
    for cls in (OracleError, FormatMismatch, RangeOverflow, CatalogError):
        assert issubclass(cls, ZenithError)
    assert CatalogError.code == "CATALOG.INVALID"
