"""Shared fixtures for store-monitor tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from fakes import FakeMaintenance, ManualExecutor

from monitor.config import MonitorConfig, ProgressConfig
from monitor.credentials import set_credential_cache
from monitor.models import PackageSource, PackageTarget, SourceType

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def reset_credential_cache() -> Iterator[None]:
    """Give every test a fresh process-wide credential cache."""
    set_credential_cache(None)
    yield
    set_credential_cache(None)


@pytest.fixture
def fast_config() -> MonitorConfig:
    """Configuration with a fast progress ticker."""
    return MonitorConfig(progress=ProgressConfig(tick_interval_ms=5))


@pytest.fixture
def executor() -> ManualExecutor:
    return ManualExecutor()


@pytest.fixture
def maintenance() -> FakeMaintenance:
    return FakeMaintenance()


@pytest.fixture
def firefox() -> PackageTarget:
    return PackageTarget(name="firefox")


@pytest.fixture
def aur_target() -> PackageTarget:
    return PackageTarget(
        name="yay",
        source=PackageSource(id="aur", source_type=SourceType.AUR),
    )
