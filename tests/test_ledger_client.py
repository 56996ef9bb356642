import asyncio
from types import SimpleNamespace

import aiohttp
import httpx
import pytest
from web3.exceptions import TimeExhausted, Web3Exception

from conftest import WEI
from rewardhub.amount import AmountType, coins_to_units, to_amount, units_to_coins
from rewardhub.clients.ledger_client import Web3LedgerGateway
from rewardhub.clients.notify_client import BalanceNotifier
from rewardhub.config import Settings
from rewardhub.contracts.contracts import Fee, LedgerEvent
from rewardhub.errors import ContractViolation, LedgerError, UnconfirmedSubmission
from rewardhub.models import models

SIGNER_KEY = "0x" + "11" * 32


class Ready:
    """Awaitable that resolves immediately, standing in for web3's awaitable properties."""

    def __init__(self, value):
        self.value = value

    def __await__(self):
        yield from ()
        return self.value


def make_gateway(monkeypatch, estimate):
    gateway = Web3LedgerGateway(Settings(signer_private_key=SIGNER_KEY))

    class Call:
        async def estimate_gas(self, tx):
            return await estimate(tx)

    monkeypatch.setattr(gateway, "_function", lambda method, args: Call())
    gateway.w3 = SimpleNamespace(eth=SimpleNamespace(gas_price=Ready(7)))
    return gateway


def test_fee_estimate_applies_safety_multiplier(monkeypatch):
    async def estimate(tx):
        assert tx["from"].startswith("0x")
        return 50_000

    gateway = make_gateway(monkeypatch, estimate)
    fee = asyncio.run(gateway.estimate_fee("rewardPvPWin", ["0xabc"]))
    assert fee == Fee(gas_limit=60_000, gas_price=7)


def test_fee_estimate_failure_is_a_ledger_error(monkeypatch):
    async def estimate(tx):
        raise Web3Exception("execution reverted")

    gateway = make_gateway(monkeypatch, estimate)
    with pytest.raises(LedgerError):
        asyncio.run(gateway.estimate_fee("rewardPvPWin", ["0xabc"]))


def test_rpc_http_error_is_a_ledger_error(monkeypatch):
    async def estimate(tx):
        raise aiohttp.ClientConnectionError("rpc node answered 502")

    gateway = make_gateway(monkeypatch, estimate)
    with pytest.raises(LedgerError):
        asyncio.run(gateway.estimate_fee("rewardPvPWin", ["0xabc"]))


def make_sending_gateway(monkeypatch, wait_for_receipt):
    gateway = Web3LedgerGateway(Settings(signer_private_key=SIGNER_KEY))
    sent = []

    class Call:
        async def build_transaction(self, tx):
            return tx

    async def transaction_count(address, block):
        return 3

    async def send_raw_transaction(raw):
        sent.append(raw)
        return bytes.fromhex("ab" * 32)

    monkeypatch.setattr(gateway, "_function", lambda method, args: Call())
    gateway.account = SimpleNamespace(
        address="0x" + "12" * 20,
        sign_transaction=lambda tx: SimpleNamespace(raw_transaction=b"signed"),
    )
    gateway.w3 = SimpleNamespace(
        eth=SimpleNamespace(
            chain_id=Ready(1),
            get_transaction_count=transaction_count,
            send_raw_transaction=send_raw_transaction,
            wait_for_transaction_receipt=wait_for_receipt,
        )
    )
    return gateway, sent


def test_submit_returns_mined_receipt(monkeypatch):
    async def mined(tx_hash, timeout):
        return {"status": 1, "blockNumber": 42}

    gateway, sent = make_sending_gateway(monkeypatch, mined)
    receipt = asyncio.run(gateway.submit("rewardPvPWin", ["0xabc"], Fee(gas_limit=60_000, gas_price=7)))
    assert receipt.tx_ref == "0x" + "ab" * 32
    assert receipt.block_height == 42
    assert sent == [b"signed"]


# Once broadcast, a lost receipt must still report which transaction went out.
def test_receipt_timeout_keeps_transaction_ref(monkeypatch):
    async def never_mined(tx_hash, timeout):
        raise TimeExhausted("receipt not found")

    gateway, sent = make_sending_gateway(monkeypatch, never_mined)
    with pytest.raises(UnconfirmedSubmission) as excinfo:
        asyncio.run(gateway.submit("rewardPvPWin", ["0xabc"], Fee(gas_limit=60_000, gas_price=7)))
    assert excinfo.value.tx_ref == "0x" + "ab" * 32
    assert excinfo.value.block_height is None
    assert sent == [b"signed"]


def test_send_failure_carries_no_transaction_ref(monkeypatch):
    async def unused(tx_hash, timeout):
        raise AssertionError("nothing was sent")

    gateway, _ = make_sending_gateway(monkeypatch, unused)

    async def rejected(raw):
        raise aiohttp.ClientConnectionError("connection reset")

    gateway.w3.eth.send_raw_transaction = rejected
    with pytest.raises(LedgerError) as excinfo:
        asyncio.run(gateway.submit("rewardPvPWin", ["0xabc"], Fee(gas_limit=60_000, gas_price=7)))
    assert not isinstance(excinfo.value, UnconfirmedSubmission)
    assert getattr(excinfo.value, "tx_ref", None) is None


def test_submit_without_signer_is_a_ledger_error():
    gateway = Web3LedgerGateway(Settings(signer_private_key=None))
    with pytest.raises(LedgerError):
        asyncio.run(gateway.submit("rewardBotWin", ["0xabc"], Fee(gas_limit=1, gas_price=1)))


def test_event_from_web3_log():
    log = {
        "address": "0xC0FFEE0000000000000000000000000000000001",
        "transactionHash": bytes.fromhex("de" * 32),
        "blockNumber": 5,
        "logIndex": 2,
        "event": "MatchWin",
        "args": {"player": "0xABCDEF", "reward": 5 * WEI, "matchType": "Bot"},
    }
    event = LedgerEvent.from_log(log)
    assert event.tx_ref == "0x" + "de" * 32
    assert event.player == "0xabcdef"
    assert event.amount == 5 * WEI
    assert event.match_type == "Bot"
    assert event.dedup_key == ("0xc0ffee0000000000000000000000000000000001", "0x" + "de" * 32, 2)


def test_event_without_player_is_a_contract_violation():
    event = LedgerEvent(address="0x1", tx_ref="0x2", block_height=1, log_index=0, args={"reward": 1})
    with pytest.raises(ContractViolation):
        event.player


# Amounts: base units are exact integers, coins are display only.
def test_coin_conversions():
    assert coins_to_units(10) == 10 * WEI
    assert coins_to_units("0.5") == WEI // 2
    assert units_to_coins(10 * WEI) == "10"
    assert units_to_coins(1_500_000_000_000_000_000) == "1.5"
    assert units_to_coins(1) == "0.000000000000000001"
    with pytest.raises(ContractViolation):
        coins_to_units("0.0000000000000000001")


@pytest.mark.parametrize("value", [-1, "-1", 1.5, True, "12a", "²", "١٢", None])
def test_malformed_amounts_are_rejected(value):
    with pytest.raises(ContractViolation):
        to_amount(value)


def test_large_amounts_persist_exactly(session_factory):
    huge = 2 ** 100 + 1
    with session_factory() as db:
        db.add(models.PlayerBalance(player_id="whale", wallet_address="0xwhale", confirmed_amount=huge))
        db.commit()
    with session_factory() as db:
        balance = db.query(models.PlayerBalance).filter_by(player_id="whale").one()
        assert balance.confirmed_amount == huge
        assert balance.pending_amount == 0
    assert AmountType().process_bind_param(huge, None) == str(huge)


def test_notifier_without_url_is_a_noop():
    async def run():
        notifier = BalanceNotifier(None)
        notifier.webhook_url = None
        sent = await notifier.balance_changed("u1", {"pending": "1"})
        await notifier.close()
        return sent

    assert asyncio.run(run()) is False


def test_notifier_reports_rejection_without_raising():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async def run():
        notifier = BalanceNotifier("http://observer.local/balance")
        await notifier.client.aclose()
        notifier.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        sent = await notifier.balance_changed("u1", {"pending": "1"}, {"amount": str(WEI)})
        await notifier.close()
        return sent

    assert asyncio.run(run()) is False
