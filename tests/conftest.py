"""
Pytest configuration and fixtures for LabelFlow tests.
"""
import asyncio
import base64
import os
from typing import List

import pytest
import pytest_asyncio

# Set test environment before importing app modules
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["CALLBACK_URL"] = ""
os.environ["TRACKING_UPDATE_MODE"] = "disabled"

from labelflow.core.database import build_engine, build_session_factory, init_models  # noqa: E402
from labelflow.services.print_job_store import PrintJobStore  # noqa: E402

ZPL_LABEL = b"^XA^FO50,50^A0N,40,40^FDJD0146XXXX^FS^BCN,100,Y,N,N^FDJD0146XXXX^FS^XZ"


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Stands in for asyncio.sleep; records requested delays without waiting."""

    def __init__(self, clock: FakeClock = None):
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.calls.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.calls)


def order_payload(order_id: str = "ORD-1") -> dict:
    return {
        "order": {
            "name": "#1001",
            "email": "ada@example.com",
            "shipping_address": {
                "first_name": "Ada",
                "last_name": "Lovelace",
                "address1": "12 Analytical Row",
                "city": "London",
                "province_code": "LND",
                "zip": "EC1A 1BB",
                "country_code": "GB",
                "phone": "+44 20 7946 0000",
            },
            "line_items": [
                {"sku": "BOOK-1", "quantity": 1, "grams": 450},
                {"sku": "MUG-2", "quantity": 2, "weight": 0.5, "weight_unit": "lb"},
            ],
        }
    }


def shipment_payload(tracking_numbers=("JD0146XXXX",), label: bytes = ZPL_LABEL) -> dict:
    return {
        "shipmentId": "SHP-9001",
        "trackingNumbers": list(tracking_numbers),
        "labels": [
            {
                "format": "ZPL",
                "trackingNumber": number,
                "content": base64.b64encode(label + number.encode()).decode(),
            }
            for number in tracking_numbers
        ],
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'labelflow.db'}")
    await init_models(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> PrintJobStore:
    return PrintJobStore(session_factory)
