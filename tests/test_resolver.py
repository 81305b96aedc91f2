import asyncio

import httpx
import pytest

from app.services.platform_client import PlatformNetworkError
from app.services.resolver import (
    TransactionIdNotAllowedError,
    TransactionNotFoundError,
    TransactionResolver,
    extract_token,
    is_transaction_id,
)
from tests.conftest import PENDING_TXN_ID, RETURNED_TXN_ID, make_transaction

HISTORY = "/borrow-transactions/business"


def detail_path(transaction_id):
    return f"/borrow-transactions/business/{transaction_id}"


@pytest.fixture
def resolver(platform_client):
    return TransactionResolver(platform_client, page_size=1000)


class TestExtractToken:

    def test_bare_serial(self):
        assert extract_token("  SN-001 \n") == "SN-001"

    def test_deep_link(self):
        assert extract_token("back2use://item/SN-001") == "SN-001"
        assert extract_token("back2use://item/SN-001?ref=poster") == "SN-001"

    def test_deep_link_with_other_scheme_is_kept_when_scheme_is_fixed(self):
        assert extract_token("other://item/SN-001", scheme="back2use") == "other://item/SN-001"
        assert extract_token("BACK2USE://item/SN-001", scheme="back2use") == "SN-001"

    def test_transaction_id_shape(self):
        assert is_transaction_id(PENDING_TXN_ID)
        assert not is_transaction_id("SN-001")
        assert not is_transaction_id(PENDING_TXN_ID + "0")


class TestFindPendingBorrow:

    def test_picks_pending_borrow_for_serial(self, platform, resolver):
        platform.add("GET", HISTORY, json={"data": {"items": [
            make_transaction(txn_id=RETURNED_TXN_ID, txn_type="return", status="completed"),
            make_transaction(txn_id=PENDING_TXN_ID, txn_type="borrow", status="pending"),
        ]}})

        transaction = asyncio.run(resolver.find_pending_borrow("SN-001"))

        assert transaction.id == PENDING_TXN_ID
        assert platform.calls("GET", HISTORY)[0].url.params["limit"] == "1000"

    def test_transaction_id_uses_detail_first(self, platform, resolver):
        platform.add("GET", detail_path(PENDING_TXN_ID), json={"data": make_transaction()})

        transaction = asyncio.run(resolver.find_pending_borrow(PENDING_TXN_ID))

        assert transaction.id == PENDING_TXN_ID
        assert platform.calls("GET", HISTORY) == []

    def test_transaction_id_falls_back_to_history(self, platform, resolver):
        platform.add("GET", HISTORY, json={"data": [make_transaction()]})

        transaction = asyncio.run(resolver.find_pending_borrow(PENDING_TXN_ID))

        assert transaction.id == PENDING_TXN_ID
        assert len(platform.calls("GET", detail_path(PENDING_TXN_ID))) == 1

    def test_no_pending_borrow(self, platform, resolver):
        platform.add("GET", HISTORY, json={"data": [
            make_transaction(txn_type="borrow", status="borrowing"),
            make_transaction(txn_id=RETURNED_TXN_ID, txn_type="return", status="completed"),
        ]})

        with pytest.raises(TransactionNotFoundError) as exc_info:
            asyncio.run(resolver.find_pending_borrow("SN-001"))

        assert exc_info.value.message == "This item has no pending borrow request."
        assert exc_info.value.token == "SN-001"


class TestResolveReturnSerial:

    def test_serial_passes_through_without_calls(self, platform, resolver):
        assert asyncio.run(resolver.resolve_return_serial("SN-001")) == "SN-001"
        assert platform.requests == []

    def test_transaction_id_is_refused_with_guidance(self, platform, resolver):
        platform.add("GET", detail_path(RETURNED_TXN_ID),
                     json={"data": make_transaction(txn_id=RETURNED_TXN_ID, status="borrowing")})

        with pytest.raises(TransactionIdNotAllowedError) as exc_info:
            asyncio.run(resolver.resolve_return_serial(RETURNED_TXN_ID))

        assert "serial number" in exc_info.value.message
        assert exc_info.value.transaction.serial_number == "SN-001"
        assert platform.calls("GET", HISTORY) == []

    def test_unknown_transaction_id_is_refused_too(self, resolver):
        with pytest.raises(TransactionIdNotAllowedError) as exc_info:
            asyncio.run(resolver.resolve_return_serial(RETURNED_TXN_ID))

        assert exc_info.value.transaction is None

    def test_failed_lookup_still_gives_guidance(self, platform, resolver):
        platform.add("GET", detail_path(RETURNED_TXN_ID), status_code=400, json={"message": "Invalid id"})

        with pytest.raises(TransactionIdNotAllowedError) as exc_info:
            asyncio.run(resolver.resolve_return_serial(RETURNED_TXN_ID))

        assert exc_info.value.transaction is None
        assert "serial number" in exc_info.value.message

    def test_network_failure_on_lookup_propagates(self, platform, resolver):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        platform.add("GET", detail_path(RETURNED_TXN_ID), refuse)

        with pytest.raises(PlatformNetworkError):
            asyncio.run(resolver.resolve_return_serial(RETURNED_TXN_ID))
