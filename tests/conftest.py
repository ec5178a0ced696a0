import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import vouchers`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from vouchers.config import get_config_manager  # noqa: E402
from vouchers.merkle import build_code_tree  # noqa: E402
from vouchers.system import create_voucher_system  # noqa: E402
from vouchers.transfer import InMemoryTokenLedger  # noqa: E402


START = 1_700_000_000
END = START + 86_400
ACTIVE = START + 3_600

ISSUER = "issuer"
TOKEN = "USDC"
CODES = [f"code-{i:02d}" for i in range(16)]


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless VOUCHERS_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    run_slow = _env_flag('VOUCHERS_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set VOUCHERS_RUN_SLOW=1 to enable'))


class FixedClock:
    """Settable clock returning integer unix seconds."""

    def __init__(self, now: int = ACTIVE):
        self.now = now

    def __call__(self) -> int:
        return self.now


@pytest.fixture(autouse=True)
def _reset_config():
    manager = get_config_manager()
    manager.reset()
    yield
    manager.reset()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def tokens() -> InMemoryTokenLedger:
    ledger = InMemoryTokenLedger()
    ledger.mint(ISSUER, TOKEN, 1_000_000)
    return ledger


@pytest.fixture
def system(tokens, clock):
    return create_voucher_system(tokens, clock=clock)


@pytest.fixture
def tree():
    return build_code_tree(CODES)


@pytest.fixture
def register(system, tree):
    """Register an issuance over ``CODES`` with overridable parameters."""
    def _register(issuance_id: str = "drop-001", **overrides):
        params = dict(
            issuance_id=issuance_id,
            name="Launch drop",
            token=TOKEN,
            total_code_count=len(CODES),
            claim_amount_per_code=10,
            claim_frequency=1,
            total_issued_amount=100,
            start_time=START,
            end_time=END,
            merkle_root=tree.root,
            creator=ISSUER,
        )
        params.update(overrides)
        return system.registry.register_issuance(**params)
    return _register
