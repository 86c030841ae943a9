"""
Portfolio ledger API client implementation.
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


class LedgerError(Exception):
    """Base exception for ledger client errors."""

    pass


class LedgerAPIError(LedgerError):
    """API returned an error response."""

    def __init__(
        self,
        status_code: int,
        message: str,
        response_body: str | None = None,
        errors: dict | None = None,
    ):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        self.errors = errors or {}

        error_details = []
        for field_name, msgs in self.errors.items():
            if isinstance(msgs, list):
                error_details.extend([f"{field_name}: {m}" for m in msgs])
            else:
                error_details.append(f"{field_name}: {msgs}")

        detail_str = "; ".join(error_details) if error_details else message
        super().__init__(f"Ledger API error {status_code}: {detail_str}")


class LedgerConnectionError(LedgerError):
    """Failed to connect to the ledger."""

    pass


class LedgerDuplicateError(LedgerError):
    """Transaction already exists for this idempotency key."""

    def __init__(self, idempotency_key: str, existing_id: str | None = None):
        self.idempotency_key = idempotency_key
        self.existing_id = existing_id
        super().__init__(f"Transaction with idempotency key '{idempotency_key[:12]}' already exists")


@dataclass
class LedgerPortfolio:
    """Ledger portfolio representation."""

    id: str
    name: str
    description: str | None = None
    currency: str = "CAD"

    @classmethod
    def from_api(cls, data: dict) -> "LedgerPortfolio":
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            description=data.get("description"),
            currency=data.get("currency", "CAD"),
        )


@dataclass
class LedgerTransaction:
    """Ledger transaction representation."""

    id: str
    portfolio_id: str
    symbol: str | None
    transaction_type: str
    quantity: Decimal
    price: Decimal
    transaction_date: str | None = None
    executed_at: str | None = None
    asset_id: str | None = None
    total_amount: Decimal | None = None
    external_id: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, data: dict) -> "LedgerTransaction":
        total = data.get("total_amount")
        return cls(
            id=str(data["id"]),
            portfolio_id=str(data.get("portfolio_id", "")),
            symbol=data.get("symbol"),
            transaction_type=data.get("transaction_type", ""),
            quantity=Decimal(str(data.get("quantity", "0"))),
            price=Decimal(str(data.get("price", "0"))),
            transaction_date=data.get("transaction_date"),
            executed_at=data.get("executed_at"),
            asset_id=str(data["asset_id"]) if data.get("asset_id") is not None else None,
            total_amount=Decimal(str(total)) if total is not None else None,
            external_id=data.get("external_id"),
            meta=data.get("meta") or {},
        )

    def to_dict(self) -> dict:
        """Serialize for ProcessingResult.transaction."""
        return {
            "id": self.id,
            "portfolio_id": self.portfolio_id,
            "symbol": self.symbol,
            "transaction_type": self.transaction_type,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "transaction_date": self.transaction_date,
            "executed_at": self.executed_at,
            "asset_id": self.asset_id,
            "total_amount": str(self.total_amount) if self.total_amount is not None else None,
            "external_id": self.external_id,
            "meta": dict(self.meta),
        }


class LedgerClient:
    """
    Client for the portfolio ledger API.

    Features:
    - Create transactions with an idempotency key
    - Asset lookup/creation
    - Portfolio listing/creation
    - Auto-insert configuration lookup
    - Automatic retry with backoff
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize ledger client.

        Args:
            base_url: Ledger API URL (e.g., "http://localhost:3000")
            token: API bearer token
            timeout: Request timeout in seconds
            max_retries: Maximum retry attempts
            backoff_factor: Backoff factor for retries
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self.session = requests.Session()
        self.session.headers.update(
            {
                "Accept": "application/json",
                "Content-Type": "application/json",
            }
        )
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

        # POST is retried too: creates carry an Idempotency-Key
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET", "POST", "PUT"],
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json_data: dict | None = None,
        headers: dict | None = None,
    ) -> requests.Response:
        """Make an API request with error handling."""
        url = f"{self.base_url}{API_PREFIX}{endpoint}"

        logger.debug(f"API Request: {method} {url}")
        if json_data:
            logger.debug(f"Request body: {json.dumps(json_data, indent=2)}")

        try:
            response = self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            logger.error(f"Connection error to {url}: {e}")
            raise LedgerConnectionError(
                f"Failed to connect to ledger at {self.base_url}: {e}"
            ) from e
        except requests.exceptions.Timeout as e:
            logger.error(f"Timeout for {url}: {e}")
            raise LedgerConnectionError(f"Request to ledger timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Request error for {url}: {e}")
            raise LedgerError(f"Request failed: {e}") from e

        logger.debug(f"Response status: {response.status_code}")

        if not response.ok:
            error_body = response.text
            errors: dict = {}
            try:
                error_json = response.json()
                errors = error_json.get("errors", {}) or {}
                message = error_json.get("message", response.reason)
            except ValueError:
                message = response.reason

            logger.error(f"API Error {response.status_code}: {message}")
            logger.debug(f"Full response body: {error_body}")

            raise LedgerAPIError(
                status_code=response.status_code,
                message=message,
                response_body=error_body,
                errors=errors,
            )

        return response

    def test_connection(self) -> bool:
        """Test connection to the ledger API."""
        try:
            self._request("GET", "/health")
            return True
        except LedgerError:
            return False

    # Portfolios

    def list_portfolios(self) -> list[LedgerPortfolio]:
        response = self._request("GET", "/portfolios")
        return [LedgerPortfolio.from_api(item) for item in response.json().get("data", [])]

    def create_portfolio(
        self, name: str, description: str | None = None, currency: str = "CAD"
    ) -> LedgerPortfolio:
        """Create a portfolio and return it."""
        response = self._request(
            "POST",
            "/portfolios",
            json_data={"name": name, "description": description, "currency": currency},
        )
        portfolio = LedgerPortfolio.from_api(response.json().get("data", {}))
        logger.info(f"Created ledger portfolio '{name}' id={portfolio.id}")
        return portfolio

    # Assets

    def get_or_create_asset(self, symbol: str, asset_type: str = "stock") -> str:
        """
        Look up an asset by symbol, creating it if missing.

        Returns:
            Ledger asset ID
        """
        response = self._request("GET", "/assets", params={"symbol": symbol})
        existing = response.json().get("data", [])
        if existing:
            return str(existing[0]["id"])

        response = self._request(
            "POST", "/assets", json_data={"symbol": symbol, "asset_type": asset_type}
        )
        asset_id = str(response.json().get("data", {}).get("id"))
        logger.info(f"Created ledger asset {symbol} ({asset_type}) id={asset_id}")
        return asset_id

    # Transactions

    def create_transaction(
        self,
        portfolio_id: str,
        asset_id: str,
        transaction_type: str,
        quantity: Decimal,
        price: Decimal,
        transaction_date: str,
        idempotency_key: str,
        executed_at: str | None = None,
        total_amount: Decimal | None = None,
        fees: Decimal | None = None,
        currency: str = "CAD",
        notes: str | None = None,
        meta: dict[str, Any] | None = None,
        skip_duplicates: bool = True,
    ) -> LedgerTransaction:
        """
        Create a transaction in the ledger.

        Args:
            idempotency_key: Email fingerprint; the ledger rejects repeats with 409
            skip_duplicates: Return the existing transaction on 409 when the
                ledger reports its id

        Raises:
            LedgerAPIError: If API returns an error
            LedgerDuplicateError: On 409 without a usable existing transaction
        """
        payload = {
            "asset_id": asset_id,
            "transaction_type": transaction_type,
            "quantity": str(quantity),
            "price": str(price),
            "transaction_date": transaction_date,
            "executed_at": executed_at,
            "total_amount": str(total_amount) if total_amount is not None else None,
            "fees": str(fees) if fees is not None else None,
            "currency": currency,
            "notes": notes,
            "external_id": idempotency_key,
            "meta": meta or {},
        }

        try:
            response = self._request(
                "POST",
                f"/portfolios/{portfolio_id}/transactions",
                json_data=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
        except LedgerAPIError as e:
            if e.status_code != 409:
                raise
            try:
                body = json.loads(e.response_body or "{}")
            except ValueError:
                logger.warning(f"Unreadable 409 body for key {idempotency_key[:12]}")
                body = {}
            data = body.get("data") if isinstance(body, dict) else None
            existing_id = data.get("id") if isinstance(data, dict) else None
            if skip_duplicates and existing_id is not None:
                logger.info(
                    f"Ledger already holds transaction for key {idempotency_key[:12]} "
                    f"(id={existing_id})"
                )
                return LedgerTransaction(
                    id=str(existing_id),
                    portfolio_id=portfolio_id,
                    symbol=None,
                    transaction_type=transaction_type,
                    quantity=quantity,
                    price=price,
                    transaction_date=transaction_date,
                    executed_at=executed_at,
                    asset_id=asset_id,
                    total_amount=total_amount,
                    external_id=idempotency_key,
                    meta=meta or {},
                )
            raise LedgerDuplicateError(idempotency_key, existing_id) from e

        transaction = LedgerTransaction.from_api(response.json().get("data", {}))
        logger.info(f"Created ledger transaction id={transaction.id}")
        return transaction

    def get_transactions(
        self,
        portfolio_id: str,
        symbol: str | None = None,
        since: str | None = None,
    ) -> list[LedgerTransaction]:
        """List transactions of a portfolio, optionally by symbol and start date."""
        params = {}
        if symbol:
            params["symbol"] = symbol
        if since:
            params["since"] = since
        response = self._request(
            "GET", f"/portfolios/{portfolio_id}/transactions", params=params or None
        )
        return [LedgerTransaction.from_api(item) for item in response.json().get("data", [])]

    # Configuration

    def get_auto_insert_setting(self, config_id: str) -> bool | None:
        """
        Read the auto-insert flag of an email configuration.

        Returns:
            The flag, or None if the configuration does not state one
        """
        response = self._request("GET", f"/email-configurations/{config_id}")
        value = response.json().get("data", {}).get("auto_insert_enabled")
        return bool(value) if value is not None else None
