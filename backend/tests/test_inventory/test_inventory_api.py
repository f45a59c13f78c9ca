"""
Integration tests for inventory API endpoints.
"""

import uuid
from datetime import date
from unittest.mock import AsyncMock

import pytest
from fastapi import status

from storefront.api.deps import get_ledger_service, get_stock_reconciler
from storefront.core.errors import ValidationError
from storefront.main import app
from storefront.services.inventory.ledger import InventoryLedgerService
from storefront.services.inventory.reconciler import RestorationCause, StockReconciler

API = "/api/v1/inventory"


@pytest.fixture
def mock_reconciler() -> AsyncMock:
    reconciler = AsyncMock(spec=StockReconciler)
    app.dependency_overrides[get_stock_reconciler] = lambda: reconciler
    return reconciler


@pytest.fixture
def mock_ledger() -> AsyncMock:
    ledger = AsyncMock(spec=InventoryLedgerService)
    app.dependency_overrides[get_ledger_service] = lambda: ledger
    return ledger


class TestRestoration:
    def test_payment_service_restores_after_refund(self, test_client, mock_reconciler, service_headers):
        order_id = uuid.uuid4()
        mock_reconciler.restore_inventory.return_value = {
            "order_id": str(order_id),
            "restored_items": [{"product_id": "p-1", "quantity": 2}],
            "failed_items": [],
        }

        response = test_client.post(f"{API}/restore/refund/{order_id}", headers=service_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["restored_items"][0]["quantity"] == 2
        mock_reconciler.restore_inventory.assert_awaited_once_with(order_id, RestorationCause.REFUND)

    def test_admin_restores_after_cancel(self, test_client, mock_reconciler, admin_headers):
        order_id = uuid.uuid4()
        mock_reconciler.restore_inventory.return_value = {
            "order_id": str(order_id),
            "restored_items": [],
            "failed_items": [],
        }

        response = test_client.post(f"{API}/restore/cancel/{order_id}", headers=admin_headers)

        assert response.status_code == status.HTTP_200_OK
        mock_reconciler.restore_inventory.assert_awaited_once_with(order_id, RestorationCause.CANCEL)

    def test_anonymous_caller_is_rejected(self, test_client, mock_reconciler):
        response = test_client.post(f"{API}/restore/refund/{uuid.uuid4()}")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        mock_reconciler.restore_inventory.assert_not_awaited()

    def test_customer_is_forbidden(self, test_client, mock_reconciler, user_headers):
        response = test_client.post(f"{API}/restore/cancel/{uuid.uuid4()}", headers=user_headers)

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_ineligible_order_is_400(self, test_client, mock_reconciler, service_headers):
        mock_reconciler.restore_inventory.side_effect = ValidationError(
            "Cannot restore inventory for non-refunded order"
        )

        response = test_client.post(f"{API}/restore/refund/{uuid.uuid4()}", headers=service_headers)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["message"] == "Cannot restore inventory for non-refunded order"


class TestLedgerQueries:
    def test_history_passes_filters(self, test_client, mock_ledger, admin_headers):
        product_id = uuid.uuid4()
        mock_ledger.get_history.return_value = {
            "data": [],
            "pagination": {"page": 1, "limit": 20, "total": 0, "total_pages": 0},
        }

        response = test_client.get(
            f"{API}/products/{product_id}/history",
            params={"source": "REFUND_CREDIT", "startDate": "2024-01-01", "endDate": "2024-01-31"},
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "success"
        mock_ledger.get_history.assert_awaited_once_with(
            product_id=product_id,
            cause="REFUND_CREDIT",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 1, 31),
            page=1,
            limit=20,
        )

    def test_history_requires_admin(self, test_client, mock_ledger, user_headers):
        response = test_client.get(f"{API}/products/{uuid.uuid4()}/history", headers=user_headers)

        assert response.status_code == status.HTTP_403_FORBIDDEN

    def test_stats_default_grouping(self, test_client, mock_ledger, admin_headers):
        mock_ledger.get_stats.return_value = []

        response = test_client.get(f"{API}/stats", headers=admin_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"] == []
        mock_ledger.get_stats.assert_awaited_once_with(start_date=None, end_date=None, group_by="day")


class TestAdjustment:
    def test_admin_adjusts_stock(self, test_client, mock_ledger, admin_headers):
        product_id = uuid.uuid4()
        mock_ledger.adjust_stock.return_value = {"change": -3, "previous_stock": 10, "new_stock": 7}

        response = test_client.post(
            f"{API}/products/{product_id}/adjust",
            json={"delta": -3, "notes": "Broken in warehouse"},
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["new_stock"] == 7
        mock_ledger.adjust_stock.assert_awaited_once_with(
            product_id=product_id,
            delta=-3,
            actor_id="admin-1",
            notes="Broken in warehouse",
        )

    def test_zero_delta_is_rejected(self, test_client, mock_ledger, admin_headers):
        response = test_client.post(
            f"{API}/products/{uuid.uuid4()}/adjust",
            json={"delta": 0},
            headers=admin_headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        mock_ledger.adjust_stock.assert_not_awaited()
