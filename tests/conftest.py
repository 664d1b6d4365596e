from __future__ import annotations

import os
from datetime import UTC, datetime
from typing import Callable

import pytest

REPORT_SERVICE_HEAD = """# Report Service

## Goals
- Give support staff a daily usage report; success is measured by 95% of reports delivered within 5 minutes.

## Current State
- Usage data is stored in the events table and exported manually.

## Requirements
### Report API
- The report endpoint returns a JSON summary of daily usage, exposes RPT-API and requires CTX-AUTH. ~200 lines
- Export command writes a CSV file for the selected day. ~150 lines

### Auth
- Token guard rejects requests without a valid token and provides CTX-AUTH. ~120 lines
"""

REPORT_SERVICE_CONSTRAINTS = """
## Constraints
- The service must run on Python 3.11 and logs go to stdout.
- Every deliverable is verified by automated tests.
"""

REPORT_SERVICE_GLOSSARY = """
## Glossary
- RPT-API: HTTP interface for daily usage reports.
"""


@pytest.fixture(autouse=True)
def _isolated_bundlegate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer BUNDLEGATE_* settings out of the tests."""
    for name in list(os.environ):
        if name.startswith("BUNDLEGATE_"):
            monkeypatch.delenv(name)


@pytest.fixture
def complete_doc() -> str:
    """Requirements document that leaves no checklist gap."""
    return REPORT_SERVICE_HEAD + REPORT_SERVICE_CONSTRAINTS + REPORT_SERVICE_GLOSSARY


@pytest.fixture
def three_gap_doc() -> str:
    """Same document without constraints, operational or validation expectations."""
    return REPORT_SERVICE_HEAD + REPORT_SERVICE_GLOSSARY


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: datetime(2026, 1, 15, 12, 0, tzinfo=UTC)
