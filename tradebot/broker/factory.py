from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from tradebot.broker.alpaca import AlpacaGateway
from tradebot.broker.base import BrokerGateway
from tradebot.broker.simulated import PriceSource, SimulatedGateway
from tradebot.config import BrokerConfig
from tradebot.schemas import ApiKey


log = logging.getLogger(__name__)

ENVIRONMENTS = ("paper", "live")


class CredentialStatus(str, enum.Enum):
    READY = "ready"
    MISSING = "missing_credentials"
    INVALID = "invalid_credentials"


@dataclass(frozen=True)
class CredentialCheck:
    status: CredentialStatus
    gateway: Optional[BrokerGateway] = None
    reason: str = ""

    @property
    def ready(self) -> bool:
        return self.status is CredentialStatus.READY


def check_credentials(api_key: Optional[ApiKey]) -> CredentialCheck:
    """Static precondition: is there a well-formed key to build a gateway from?"""
    if api_key is None:
        return CredentialCheck(CredentialStatus.MISSING, reason="API key not configured")
    if not api_key.api_key.strip() or not api_key.secret_key.strip():
        return CredentialCheck(CredentialStatus.INVALID, reason="API key or secret is empty")
    if api_key.environment not in ENVIRONMENTS:
        return CredentialCheck(
            CredentialStatus.INVALID, reason=f"unknown environment: {api_key.environment}"
        )
    return CredentialCheck(CredentialStatus.READY)


def build_gateway(api_key: ApiKey, cfg: BrokerConfig, price_of: PriceSource) -> BrokerGateway:
    if cfg.mode == "simulated":
        return SimulatedGateway(
            starting_cash=cfg.starting_cash,
            price_of=price_of,
            environment=api_key.environment,
        )
    if cfg.mode == "alpaca":
        base_url = cfg.paper_url if api_key.environment == "paper" else cfg.live_url
        return AlpacaGateway(
            api_key=api_key.api_key,
            secret_key=api_key.secret_key,
            base_url=base_url,
            environment=api_key.environment,
            timeout_seconds=cfg.timeout_seconds,
            proxy=cfg.proxy,
        )
    raise ValueError(f"Unsupported broker mode: {cfg.mode}")


class GatewayPool:
    """
    One gateway per user, rebuilt when the user's key changes. Keeping the
    instance alive preserves HTTP connection pools (and simulated balances).
    """

    def __init__(self, cfg: BrokerConfig, price_of: PriceSource) -> None:
        self._cfg = cfg
        self._price_of = price_of
        self._gateways: Dict[int, tuple[tuple[str, str, str], BrokerGateway]] = {}
        self._retired: list[BrokerGateway] = []

    def resolve(self, user_id: int, api_key: Optional[ApiKey]) -> CredentialCheck:
        check = check_credentials(api_key)
        if not check.ready or api_key is None:
            return check

        fingerprint = (api_key.api_key, api_key.secret_key, api_key.environment)
        cached = self._gateways.get(user_id)
        if cached is not None and cached[0] == fingerprint:
            return CredentialCheck(CredentialStatus.READY, gateway=cached[1])

        gateway = build_gateway(api_key, self._cfg, self._price_of)
        self._gateways[user_id] = (fingerprint, gateway)
        if cached is not None:
            self._retired.append(cached[1])
            log.info("Rebuilt broker gateway for user %s (%s)", user_id, api_key.environment)
        return CredentialCheck(CredentialStatus.READY, gateway=gateway)

    def set(self, user_id: int, api_key: ApiKey, gateway: BrokerGateway) -> None:
        """Adopt an already-built gateway (e.g. the one that validated the key)."""
        fingerprint = (api_key.api_key, api_key.secret_key, api_key.environment)
        cached = self._gateways.get(user_id)
        if cached is not None and cached[1] is not gateway:
            self._retired.append(cached[1])
        self._gateways[user_id] = (fingerprint, gateway)

    async def aclose(self) -> None:
        gateways = [g for _, g in self._gateways.values()] + self._retired
        self._gateways.clear()
        self._retired = []
        for g in gateways:
            await g.aclose()
