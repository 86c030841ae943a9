"""
Tests for the portfolio ledger API client.

These tests use responses library to mock HTTP requests,
validating client behavior without making real API calls.
"""

import json
from decimal import Decimal

import pytest
import requests
import responses

from brokermail_ledger.ledger_client import (
    LedgerAPIError,
    LedgerClient,
    LedgerConnectionError,
    LedgerDuplicateError,
)

BASE_URL = "http://ledger.test:3000"
API = f"{BASE_URL}/api/v1"


@pytest.fixture
def client():
    return LedgerClient(BASE_URL, token="test-token", max_retries=0)


def _transaction_payload(**overrides):
    data = {
        "id": 501,
        "portfolio_id": 7,
        "symbol": "AAPL",
        "transaction_type": "buy",
        "quantity": "100",
        "price": "150.50",
        "transaction_date": "2025-01-15",
        "executed_at": "2025-01-15T15:30:00Z",
        "asset_id": 3,
        "total_amount": "15050.00",
        "external_id": "f" * 64,
        "meta": {"order_id": "WS1"},
    }
    data.update(overrides)
    return data


class TestConnection:
    """Tests for the health check."""

    @responses.activate
    def test_connection_success(self, client):
        responses.add(responses.GET, f"{API}/health", json={"status": "ok"}, status=200)

        assert client.test_connection() is True
        assert responses.calls[0].request.headers["Authorization"] == "Bearer test-token"

    @responses.activate
    def test_connection_failure(self, client):
        responses.add(responses.GET, f"{API}/health", json={"message": "down"}, status=500)

        assert client.test_connection() is False


class TestPortfolios:
    """Tests for portfolio endpoints."""

    @responses.activate
    def test_list_portfolios(self, client):
        responses.add(
            responses.GET,
            f"{API}/portfolios",
            json={"data": [{"id": 7, "name": "My TFSA", "description": None, "currency": "CAD"}]},
        )

        portfolios = client.list_portfolios()

        assert len(portfolios) == 1
        assert portfolios[0].id == "7"
        assert portfolios[0].name == "My TFSA"

    @responses.activate
    def test_create_portfolio(self, client):
        responses.add(
            responses.POST,
            f"{API}/portfolios",
            json={"data": {"id": 8, "name": "Registered Retirement Savings Plan"}},
            status=201,
        )

        portfolio = client.create_portfolio("Registered Retirement Savings Plan", "RRSP")

        assert portfolio.id == "8"
        body = json.loads(responses.calls[0].request.body)
        assert body == {
            "name": "Registered Retirement Savings Plan",
            "description": "RRSP",
            "currency": "CAD",
        }


class TestAssets:
    """Tests for asset lookup and creation."""

    @responses.activate
    def test_existing_asset(self, client):
        responses.add(responses.GET, f"{API}/assets", json={"data": [{"id": 3, "symbol": "AAPL"}]})

        assert client.get_or_create_asset("AAPL") == "3"
        assert len(responses.calls) == 1
        assert "symbol=AAPL" in responses.calls[0].request.url

    @responses.activate
    def test_missing_asset_is_created(self, client):
        responses.add(responses.GET, f"{API}/assets", json={"data": []})
        responses.add(responses.POST, f"{API}/assets", json={"data": {"id": 4}}, status=201)

        assert client.get_or_create_asset("SHOP.TO", "stock") == "4"
        assert json.loads(responses.calls[1].request.body) == {
            "symbol": "SHOP.TO",
            "asset_type": "stock",
        }


class TestTransactions:
    """Tests for transaction creation and listing."""

    def _create(self, client, **kwargs):
        return client.create_transaction(
            portfolio_id="7",
            asset_id="3",
            transaction_type="buy",
            quantity=Decimal("100"),
            price=Decimal("150.50"),
            transaction_date="2025-01-15",
            idempotency_key="f" * 64,
            executed_at="2025-01-15T15:30:00Z",
            **kwargs,
        )

    @responses.activate
    def test_create_transaction(self, client):
        responses.add(
            responses.POST,
            f"{API}/portfolios/7/transactions",
            json={"data": _transaction_payload()},
            status=201,
        )

        transaction = self._create(client, meta={"order_id": "WS1"})

        assert transaction.id == "501"
        assert transaction.quantity == Decimal("100")
        assert transaction.total_amount == Decimal("15050.00")
        assert transaction.to_dict()["price"] == "150.50"

        request = responses.calls[0].request
        assert request.headers["Idempotency-Key"] == "f" * 64
        body = json.loads(request.body)
        assert body["quantity"] == "100"
        assert body["price"] == "150.50"
        assert body["external_id"] == "f" * 64
        assert body["meta"] == {"order_id": "WS1"}

    @responses.activate
    def test_conflict_returns_existing(self, client):
        responses.add(
            responses.POST,
            f"{API}/portfolios/7/transactions",
            json={"message": "duplicate", "data": {"id": 42}},
            status=409,
        )

        transaction = self._create(client)

        assert transaction.id == "42"
        assert transaction.external_id == "f" * 64

    @responses.activate
    def test_conflict_without_id_raises(self, client):
        responses.add(
            responses.POST,
            f"{API}/portfolios/7/transactions",
            json={"message": "duplicate"},
            status=409,
        )

        with pytest.raises(LedgerDuplicateError):
            self._create(client)

    @responses.activate
    def test_conflict_raises_when_not_skipping(self, client):
        responses.add(
            responses.POST,
            f"{API}/portfolios/7/transactions",
            json={"data": {"id": 42}},
            status=409,
        )

        with pytest.raises(LedgerDuplicateError) as exc_info:
            self._create(client, skip_duplicates=False)

        assert exc_info.value.existing_id == 42

    @responses.activate
    def test_validation_error(self, client):
        responses.add(
            responses.POST,
            f"{API}/portfolios/7/transactions",
            json={"message": "invalid", "errors": {"quantity": ["must be positive"]}},
            status=422,
        )

        with pytest.raises(LedgerAPIError) as exc_info:
            self._create(client)

        assert exc_info.value.status_code == 422
        assert "quantity: must be positive" in str(exc_info.value)

    @responses.activate
    def test_get_transactions(self, client):
        responses.add(
            responses.GET,
            f"{API}/portfolios/7/transactions",
            json={"data": [_transaction_payload(), _transaction_payload(id=502, quantity="5")]},
        )

        transactions = client.get_transactions("7", symbol="AAPL", since="2025-01-08")

        assert [t.id for t in transactions] == ["501", "502"]
        assert transactions[1].quantity == Decimal("5")
        assert transactions[0].meta == {"order_id": "WS1"}
        url = responses.calls[0].request.url
        assert "symbol=AAPL" in url
        assert "since=2025-01-08" in url


class TestAutoInsertSetting:
    """Tests for the email configuration lookup."""

    @responses.activate
    def test_enabled(self, client):
        responses.add(
            responses.GET,
            f"{API}/email-configurations/cfg-1",
            json={"data": {"id": "cfg-1", "auto_insert_enabled": False}},
        )

        assert client.get_auto_insert_setting("cfg-1") is False

    @responses.activate
    def test_unset(self, client):
        responses.add(
            responses.GET, f"{API}/email-configurations/cfg-1", json={"data": {"id": "cfg-1"}}
        )

        assert client.get_auto_insert_setting("cfg-1") is None

    @responses.activate
    def test_not_found(self, client):
        responses.add(
            responses.GET,
            f"{API}/email-configurations/missing",
            json={"message": "not found"},
            status=404,
        )

        with pytest.raises(LedgerAPIError) as exc_info:
            client.get_auto_insert_setting("missing")

        assert exc_info.value.status_code == 404


class TestConnectionErrors:
    """Transport failures surface as LedgerConnectionError."""

    @responses.activate
    def test_connection_refused(self, client):
        responses.add(
            responses.GET,
            f"{API}/portfolios",
            body=requests.exceptions.ConnectionError("refused"),
        )

        with pytest.raises(LedgerConnectionError):
            client.list_portfolios()
