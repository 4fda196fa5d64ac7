import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import settlement`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from settlement.config import ConfigManager  # noqa: E402
from settlement.domain import ManualClock  # noqa: E402
from settlement.keeper import RetryPolicy  # noqa: E402
from settlement.system import SystemAddresses, build_system  # noqa: E402
from settlement.transport import TransportKind  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless SETTLEMENT_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('SETTLEMENT_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set SETTLEMENT_RUN_SLOW=1 to enable'))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def fresh_config(monkeypatch):
    """Every test starts from default configuration with no env overrides."""
    for name in list(os.environ):
        if name.startswith("SETTLEMENT_") and name != "SETTLEMENT_RUN_SLOW":
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset_instance()
    yield ConfigManager()
    ConfigManager.reset_instance()


@pytest.fixture
def addresses() -> SystemAddresses:
    return SystemAddresses()


@pytest.fixture
def home_clock() -> ManualClock:
    return ManualClock(start=1_700_000_000)


@pytest.fixture
def remote_clock() -> ManualClock:
    return ManualClock(start=1_700_000_500)


def _build(kind, home_clock, remote_clock, addresses, **options):
    return build_system(
        transport_kind=kind,
        home_clock=home_clock,
        remote_clock=remote_clock,
        addresses=addresses,
        retry=RetryPolicy(max_attempts=2, base_delay_seconds=0, sleep=lambda _: None),
        min_amount=options.pop("min_amount", 1_000),
        **options,
    )


@pytest.fixture
def system(home_clock, remote_clock, addresses):
    """Burn/mint deployment with 1_000_000 base units of idle treasury capital."""
    s = _build(TransportKind.BURN_MINT, home_clock, remote_clock, addresses)
    s.fund_treasury(1_000_000)
    return s


@pytest.fixture
def route_system(home_clock, remote_clock, addresses):
    """Swap-route deployment with a 10 bps fee."""
    s = _build(TransportKind.SWAP_ROUTE, home_clock, remote_clock, addresses, fee_bps=10)
    s.fund_treasury(1_000_000)
    return s


@pytest.fixture
def controller(system):
    return system.controller


@pytest.fixture
def tm(addresses) -> str:
    return addresses.treasury_manager


@pytest.fixture
def keeper(addresses) -> str:
    return addresses.keeper


@pytest.fixture
def owner(addresses) -> str:
    return addresses.owner
