from __future__ import annotations

from typing import Iterator

import pytest

from drone_quality.compute.dispatcher import ComputeDispatcher
from drone_quality.core.config import ComputeConfig


@pytest.fixture
def cpu_dispatcher() -> Iterator[ComputeDispatcher]:
    dispatcher = ComputeDispatcher(ComputeConfig(enable_gpu=False))
    yield dispatcher
    dispatcher.close()
