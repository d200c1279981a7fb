from __future__ import annotations

import pytest

from forecast_trader.services.monitoring import get_monitoring_center


@pytest.fixture(autouse=True)
def _reset_monitoring() -> None:
    get_monitoring_center().reset()
