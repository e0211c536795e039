"""
Shared fixtures: a manual clock, a throwaway SQLite store, the simulated
ledger and a fully wired service.
"""

import pytest

from clearhouse.core.config import SettlementConfig
from clearhouse.core.ledger import SimulatedLedger
from clearhouse.core.service import SettlementService
from clearhouse.core.storage import StorageManager

T0 = 1_700_000_000
DAY = 86400


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds

    def set(self, ts: int) -> None:
        self.now = ts


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return SettlementConfig(db_path=tmp_path / "clearhouse.db", log_dir=tmp_path / "logs")


@pytest.fixture
def storage(config):
    manager = StorageManager.from_path(config.db_path)
    yield manager
    manager.close()


@pytest.fixture
def ledger():
    return SimulatedLedger()


@pytest.fixture
def service(config, storage, ledger, clock):
    return SettlementService(config, storage, ledger, clock=clock)


def make_owned_claim(service, ledger, creator="debtor", holder="creditor",
                     face_value=1000, maturity_ts=None):
    """Issue a claim and walk it to owned, registering the token on the ledger."""
    maturity_ts = maturity_ts if maturity_ts is not None else service.clock() + 90 * DAY
    claim = service.issue_claim(creator, holder, face_value, maturity_ts)
    ledger.register_asset(claim.claim_id, holder)
    service.confirm_minted(claim.claim_id)
    return service.accept_claim(claim.claim_id, holder)


def make_auction(service, ledger, min_bid=100, duration=3600, custody=True, holder="creditor"):
    """Owned claim listed for auction; returns (claim, auction)."""
    claim = make_owned_claim(service, ledger, holder=holder)
    auction = service.list_claim(claim.claim_id, holder, service.clock() + duration, min_bid, custody)
    return claim, auction


def fund_and_bid(service, ledger, auction_id, bidder, amount, balance=None):
    """Fund a bidder, create its instrument and place the bid."""
    ledger.fund(bidder, amount if balance is None else balance)
    instrument = ledger.create_instrument(bidder, "creditor", amount)
    return service.place_bid(auction_id, bidder, amount, instrument.instrument_id, instrument.confirmation)
