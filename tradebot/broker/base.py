from __future__ import annotations

from abc import ABC, abstractmethod

from tradebot.schemas import AccountInfo, BrokerPosition, OrderRequest, OrderResponse


class BrokerError(RuntimeError):
    """Any failure talking to the trading venue."""


class BrokerTransportError(BrokerError):
    """Timeouts, connection failures and 5xx responses. Usually transient."""


class BrokerRejectedError(BrokerError):
    """The venue refused the request (invalid order, insufficient funds, bad keys)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BrokerGateway(ABC):
    """
    Remote trading venue. Every call may raise :class:`BrokerError`; callers
    log and skip the dependent step instead of retrying.
    """

    environment: str = "paper"

    @abstractmethod
    async def get_account(self) -> AccountInfo:
        raise NotImplementedError

    @abstractmethod
    async def get_positions(self) -> list[BrokerPosition]:
        raise NotImplementedError

    @abstractmethod
    async def submit_order(self, req: OrderRequest) -> OrderResponse:
        raise NotImplementedError

    @abstractmethod
    async def close_position(self, symbol: str) -> OrderResponse:
        raise NotImplementedError

    @abstractmethod
    async def get_orders(self, status: str = "all", limit: int = 100) -> list[OrderResponse]:
        raise NotImplementedError

    @abstractmethod
    async def cancel_order(self, order_id: str) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
