"""
Pytest configuration for the Django apps.

Auto-marks tests by filename and makes TransactionTestCase flushes work
on PostgreSQL. Escrow fixtures live in escrow/conftest.py.
"""

import pytest
from django.conf import settings


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full settlement flows)
    - test_views.py, test_*_service.py, test_tasks.py, etc. → integration
    - test_models.py, test_locks.py, test_adapters.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_services.py",
        "test_tasks.py",
        "test_handlers.py",
        "test_escrow_service.py",
        "test_payout_service.py",
        "test_refund_service.py",
        "test_reconciliation_listener.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_types.py",
        "test_locks.py",
        "test_stripe_adapter.py",
        "test_state_transitions.py",
        "test_events.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            # Default: integration (safe for Django where most tests hit DB)
            item.add_marker(pytest.mark.integration)


def _patch_postgresql_flush_for_cascade():
    """
    Patch PostgreSQL flush to always use CASCADE.

    TransactionTestCase resets the database with TRUNCATE, which fails on
    tables referenced by foreign keys (ledger entries -> escrows) unless
    CASCADE is used.
    """
    from django.db.backends.postgresql import operations

    original_sql_flush = operations.DatabaseOperations.sql_flush

    def sql_flush_with_cascade(
        self, style, tables, *, reset_sequences=False, allow_cascade=False
    ):
        return original_sql_flush(
            self, style, tables, reset_sequences=reset_sequences, allow_cascade=True
        )

    operations.DatabaseOperations.sql_flush = sql_flush_with_cascade


if settings.DATABASES["default"]["ENGINE"] == "django.db.backends.postgresql":
    _patch_postgresql_flush_for_cascade()
