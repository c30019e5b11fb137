"""
Tests for core service primitives.

Tests cover:
- ServiceResult construction and serialization
- BaseService logging, transactions and exception conversion
"""

import logging

import pytest

from core.exceptions import ConflictError
from core.services import BaseService, ServiceResult
from escrow.models import Escrow
from escrow.tests.factories import EscrowFactory


class TestServiceResult:
    def test_success(self):
        """Should carry data and be truthy."""
        result = ServiceResult.success({"escrow_id": "abc"})

        assert result
        assert result.success is True
        assert result.to_response() == {"success": True, "data": {"escrow_id": "abc"}}

    def test_failure(self):
        """Should carry error details and be falsy."""
        result = ServiceResult.failure(
            "Refund exceeds balance",
            error_code="REFUND_EXCEEDS_BALANCE",
            errors={"amount_cents": ["Too large"]},
        )

        assert not result
        assert result.data is None
        assert result.to_response() == {
            "success": False,
            "error": "Refund exceeds balance",
            "error_code": "REFUND_EXCEEDS_BALANCE",
            "errors": {"amount_cents": ["Too large"]},
        }

    def test_from_application_error_keeps_code(self):
        """Should reuse the error code of a BaseApplicationError."""
        result = ServiceResult.from_exception(
            ConflictError("Escrow already captured", error_code="ALREADY_CAPTURED")
        )

        assert result.error == "Escrow already captured"
        assert result.error_code == "ALREADY_CAPTURED"

    def test_from_plain_exception_uses_class_name(self):
        result = ServiceResult.from_exception(KeyError("missing"))

        assert result.error_code == "KEYERROR"


class SampleService(BaseService):
    pass


class TestBaseService:
    def test_logger_named_after_service(self):
        assert SampleService.get_logger().name == f"{__name__}.SampleService"

    def test_handle_exception_logs_and_converts(self, caplog):
        with caplog.at_level(logging.WARNING):
            result = SampleService.handle_exception(
                ConflictError("Stale record"), context="capture", log_level=logging.WARNING
            )

        assert not result
        assert result.error_code == "CONFLICT"
        assert "capture: [CONFLICT] Stale record" in caplog.text

    @pytest.mark.django_db
    def test_atomic_rolls_back_on_error(self):
        with pytest.raises(RuntimeError):
            with SampleService.atomic():
                EscrowFactory()
                raise RuntimeError("abort")

        assert not Escrow.objects.exists()
