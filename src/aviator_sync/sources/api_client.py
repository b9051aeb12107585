"""
Snapshot Client - HTTP access to the game server

One shared aiohttp session, opened lazily. The realtime poll never raises: every
failure comes back as a SnapshotFailure. The command and bookkeeping calls raise
the typed errors from ``aviator_sync.errors``.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from decimal import Decimal
from typing import Any

import aiohttp

from ..config import Config
from ..errors import (
    AlreadySettledError,
    BetRejectedError,
    CommandError,
    SessionExpiredError,
    TransportError,
)
from ..models.snapshot import FailureKind, RoundSnapshot, SnapshotFailure
from ..utils.decimal_utils import finite_float, to_decimal

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINTS = dict(Config.API["endpoints"])

_NOT_JSON = object()


def _error_message(body: Any) -> str | None:
    """Server error text, from {"error": ...} or {"detail": ...}."""
    if isinstance(body, dict):
        for key in ("error", "detail", "message"):
            if body.get(key):
                return str(body[key])
    return None


class AviatorApiClient:
    """
    Async client for the crash game REST API.

    Usage:
        async with AviatorApiClient("https://game.example") as client:
            result = await client.fetch_snapshot()
    """

    def __init__(
        self,
        base_url: str,
        *,
        access_token: str | None = None,
        user_id: str | None = None,
        timeout: float = 5.0,
        endpoints: dict[str, str] | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            base_url: Server root, e.g. "https://game.example"
            access_token: Bearer token sent with every request when set
            user_id: Included in command payloads and bet queries when set
            timeout: Per-request timeout in seconds
            endpoints: Overrides for the default endpoint paths
            session: Externally owned aiohttp session (not closed by close())
            clock: Monotonic time source stamped on snapshots
        """
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.user_id = user_id
        self.endpoints = {**DEFAULT_ENDPOINTS, **(endpoints or {})}
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._request_seq = 0

        self.stats = {
            "requests": 0,
            "transport_errors": 0,
            "http_errors": 0,
        }

    @classmethod
    def from_config(cls, config: Config, session: aiohttp.ClientSession | None = None):
        api = config.API
        return cls(
            api["base_url"],
            access_token=api["access_token"],
            user_id=api["user_id"],
            timeout=api["timeout"],
            endpoints=api["endpoints"],
            session=session,
        )

    # ========================================================================
    # SESSION
    # ========================================================================

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self):
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def set_access_token(self, token: str | None):
        self.access_token = token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.access_token:
            headers["Authorization"] = f"Bearer {self.access_token}"
        return headers

    def _next_seq(self) -> int:
        self._request_seq += 1
        return self._request_seq

    @property
    def last_request_seq(self) -> int:
        return self._request_seq

    async def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, Any]:
        """
        Perform one request.

        Returns:
            (status, parsed JSON body); the body is _NOT_JSON when unparseable

        Raises:
            TransportError: connection failure or timeout
        """
        url = f"{self.base_url}{self.endpoints[endpoint]}"
        session = self._get_session()
        self.stats["requests"] += 1
        try:
            async with session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
            ) as resp:
                status = resp.status
                try:
                    body = await resp.json(content_type=None)
                except ValueError:
                    body = _NOT_JSON
        except asyncio.TimeoutError as e:
            self.stats["transport_errors"] += 1
            raise TransportError(f"{method} {endpoint} timed out") from e
        except aiohttp.ClientError as e:
            self.stats["transport_errors"] += 1
            raise TransportError(f"{method} {endpoint} failed: {e}") from e

        if status >= 400:
            self.stats["http_errors"] += 1
        return status, body

    def _raise_for_command(self, status: int, body: Any, action: str):
        """Translate an error response of a command or bookkeeping call."""
        message = _error_message(body) or f"{action} failed with HTTP {status}"
        if status in (401, 403):
            raise SessionExpiredError(message, status=status)
        if status >= 500:
            raise TransportError(message, status=status)
        if status == 409 or "already" in message.lower():
            raise AlreadySettledError(message)
        raise BetRejectedError(message, status=status, payload=body if body is not _NOT_JSON else None)

    async def _call(self, method: str, endpoint: str, action: str, **kwargs) -> Any:
        status, body = await self._request(method, endpoint, **kwargs)
        if status >= 400:
            self._raise_for_command(status, body, action)
        if body is _NOT_JSON:
            raise TransportError(f"{action}: response is not JSON", status=status)
        return body

    # ========================================================================
    # REALTIME POLL
    # ========================================================================

    async def fetch_snapshot(self) -> RoundSnapshot | SnapshotFailure:
        """Fetch and normalize the realtime snapshot. Never raises."""
        seq = self._next_seq()
        try:
            status, body = await self._request("GET", "realtime")
        except TransportError as e:
            return SnapshotFailure(FailureKind.TRANSPORT, str(e))

        if status >= 400:
            return SnapshotFailure(
                FailureKind.HTTP, _error_message(body) or f"HTTP {status}", status=status
            )
        if body is _NOT_JSON:
            return SnapshotFailure(FailureKind.MALFORMED, "response is not JSON", status=status)

        try:
            return RoundSnapshot.from_raw(body, request_seq=seq, received_at=self._clock())
        except ValueError as e:
            return SnapshotFailure(FailureKind.MALFORMED, str(e), status=status)
        except Exception as e:
            logger.error(f"Unexpected error normalizing snapshot: {e}", exc_info=True)
            return SnapshotFailure(FailureKind.UNEXPECTED, str(e), status=status)

    # ========================================================================
    # BOOKKEEPING CALLS
    # ========================================================================

    async def fetch_history(self) -> list[float]:
        """Recent crash multipliers, most recent first. Invalid entries are dropped."""
        body = await self._call("GET", "history", "Fetch game history")
        if isinstance(body, dict):
            body = body.get("results", body.get("history"))
        if not isinstance(body, list):
            raise TransportError("Game history response is not a list")

        points = []
        for item in body:
            raw = item.get("crash_point") if isinstance(item, dict) else item
            value = finite_float(raw)
            if value is not None and value > 0:
                points.append(value)
        return points

    async def fetch_balance(self) -> Decimal:
        body = await self._call("GET", "balance", "Fetch balance")
        return self._parse_balance(body, "Fetch balance")

    async def check_active_bet(self, round_number: int) -> bool:
        params: dict[str, Any] = {"round_number": round_number}
        if self.user_id:
            params["user_id"] = self.user_id
        body = await self._call("GET", "check_active_bet", "Check active bet", params=params)
        return bool(body.get("has_active_bet")) if isinstance(body, dict) else False

    async def fetch_bet_history(self) -> list[dict[str, Any]]:
        """The user's recent bets. Falls back to the public listing for a known user id."""
        try:
            body = await self._call("GET", "bet_history", "Fetch bet history")
        except CommandError:
            if not self.user_id:
                raise
            body = await self._call(
                "GET",
                "bet_history_public",
                "Fetch bet history",
                params={"user_id": self.user_id},
            )
        if isinstance(body, dict):
            body = body.get("results", [])
        if not isinstance(body, list):
            raise TransportError("Bet history response is not a list")
        return [item for item in body if isinstance(item, dict)]

    # ========================================================================
    # COMMANDS
    # ========================================================================

    async def place_bet(self, stake: Decimal) -> dict[str, Any]:
        """
        Place a bet on the current round.

        Returns:
            {"balance": Decimal | None, "bet": {"id": str | None, "amount": Decimal | None}}
        """
        payload: dict[str, Any] = {"amount": str(stake)}
        if self.user_id:
            payload["user_id"] = self.user_id
        body = await self._call("POST", "place_bet", "Place bet", payload=payload)
        return self._parse_bet_response(body)

    async def cash_out(self, round_id: int, multiplier: Decimal, bet_id: str) -> dict[str, Any]:
        """
        Cash out a bet at ``multiplier``.

        Returns:
            {"balance": Decimal | None, "bet": {...}} where bet may carry the server's
            cashout multiplier and payout
        """
        payload: dict[str, Any] = {
            "round_number": round_id,
            "multiplier": str(multiplier),
            "bet_id": bet_id,
        }
        if self.user_id:
            payload["user_id"] = self.user_id
        body = await self._call("POST", "cashout", "Cash out", payload=payload)
        return self._parse_bet_response(body)

    # ========================================================================
    # PARSING
    # ========================================================================

    @staticmethod
    def _parse_balance(body: Any, action: str) -> Decimal:
        if not isinstance(body, dict) or body.get("balance") is None:
            raise TransportError(f"{action}: response has no balance")
        try:
            return to_decimal(body["balance"])
        except ValueError as e:
            raise TransportError(f"{action}: invalid balance {body['balance']!r}") from e

    @staticmethod
    def _optional_decimal(value: Any) -> Decimal | None:
        if value is None:
            return None
        try:
            result = to_decimal(value)
        except ValueError:
            return None
        return result if result.is_finite() else None

    def _parse_bet_response(self, body: Any) -> dict[str, Any]:
        if not isinstance(body, dict):
            raise TransportError("Bet response is not an object")
        bet = body.get("bet") if isinstance(body.get("bet"), dict) else {}
        bet_id = bet.get("id")
        return {
            "balance": self._optional_decimal(body.get("balance")),
            "bet": {
                "id": str(bet_id) if bet_id is not None else None,
                "amount": self._optional_decimal(bet.get("amount")),
                "multiplier": self._optional_decimal(
                    bet.get("cashout_multiplier", bet.get("multiplier"))
                ),
                "payout": self._optional_decimal(bet.get("payout", bet.get("win_amount"))),
            },
        }
