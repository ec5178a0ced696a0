"""Wiring for a complete voucher system around one ``VoucherState``.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from vouchers.admin import Authorizer, CreatorAuthorizer, EscrowAdmin
from vouchers.config import VoucherConfig, get_config
from vouchers.engine import ClaimEngine
from vouchers.events import EventLog
from vouchers.ledger import ClaimLedger
from vouchers.observability import configure_logging
from vouchers.registry import Clock, IssuanceRegistry, system_clock
from vouchers.state import VoucherState
from vouchers.transfer import InMemoryTokenLedger, TransferCollaborator, TransferGateway


@dataclass
class VoucherSystem:
    state: VoucherState
    gateway: TransferGateway
    registry: IssuanceRegistry
    ledger: ClaimLedger
    engine: ClaimEngine
    admin: EscrowAdmin

    @property
    def events(self) -> EventLog:
        return self.state.events


def create_voucher_system(
    collaborator: TransferCollaborator,
    authorizer: Optional[Authorizer] = None,
    config: Optional[VoucherConfig] = None,
    clock: Clock = system_clock,
) -> VoucherSystem:
    """Build registry, ledger, engine and escrow admin sharing one state.

    Without an explicit ``authorizer`` only an issuance's creator may reclaim.
    """
    config = config or get_config()
    configure_logging(config.observability.log_level.get(), config.observability.log_format.get())

    state = VoucherState()
    gateway = TransferGateway(collaborator)
    registry = IssuanceRegistry(state, gateway, config=config, clock=clock)
    ledger = ClaimLedger(state)
    engine = ClaimEngine(state, registry, ledger, gateway, config=config, clock=clock)
    admin = EscrowAdmin(
        state,
        registry,
        ledger,
        gateway,
        authorizer or CreatorAuthorizer(registry),
        config=config,
        clock=clock,
    )
    return VoucherSystem(
        state=state,
        gateway=gateway,
        registry=registry,
        ledger=ledger,
        engine=engine,
        admin=admin,
    )


def create_in_memory_system(
    escrow_account: str = "escrow",
    config: Optional[VoucherConfig] = None,
    clock: Clock = system_clock,
) -> Tuple[VoucherSystem, InMemoryTokenLedger]:
    """Voucher system backed by a fresh ``InMemoryTokenLedger``."""
    token_ledger = InMemoryTokenLedger(escrow_account=escrow_account)
    return create_voucher_system(token_ledger, config=config, clock=clock), token_ledger
