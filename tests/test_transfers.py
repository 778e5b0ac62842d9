from decimal import Decimal

from payment_verifier.transfers import (
    scan_window,
    from_base_units,
    format_amount,
    normalize_hash,
    fetch_native_transfers,
    fetch_token_transfers,
    collect_transfers,
)

from fakes import FakeChainReader, WALLET, BUYER, TOKEN, TOKENS, transfer_event, native_tx

TX_A = "0x" + "aa" * 32
TX_B = "0x" + "bb" * 32


def test_scan_window_stays_behind_head():
    assert scan_window(1000, confirmation_delay=6, lookback=500) == (494, 994)


def test_scan_window_clamps_at_genesis():
    assert scan_window(100, confirmation_delay=6, lookback=500) == (0, 94)


def test_scan_window_empty_when_chain_too_short():
    assert scan_window(5, confirmation_delay=6, lookback=500) is None
    assert scan_window(1000, confirmation_delay=6, lookback=0) is None


def test_base_unit_conversion_is_exact():
    assert from_base_units(25_000_000, 6) == Decimal("25")
    assert from_base_units(1, 18) == Decimal("0.000000000000000001")
    huge = 2 ** 256 - 1
    assert from_base_units(huge, 0) == Decimal(huge)


def test_format_amount_is_plain_decimal():
    assert format_amount(Decimal("10.500000")) == "10.5"
    assert format_amount(Decimal("1E+1")) == "10"
    assert format_amount(Decimal("0.000")) == "0"


def test_normalize_hash_accepts_bytes_and_unprefixed_hex():
    assert normalize_hash(bytes.fromhex("aa" * 32)) == TX_A
    assert normalize_hash("AA" * 32) == TX_A
    assert normalize_hash(TX_A.upper().replace("0X", "0x")) == TX_A


def test_native_transfers_only_to_wallet_with_value():
    reader = FakeChainReader(blocks={
        10: {"number": 10, "transactions": [
            native_tx(BUYER, 10 ** 18, TX_A, 10, to=WALLET.upper().replace("0X", "0x")),
            native_tx(BUYER, 0, "0x" + "01" * 32, 10),
            native_tx(BUYER, 5, "0x" + "02" * 32, 10, to="0x" + "99" * 20),
            native_tx(BUYER, 5, "0x" + "03" * 32, 10, to=None),
        ]},
    })

    transfers = fetch_native_transfers(reader, 9, 11, WALLET, symbol="HYPE", decimals=18)

    assert len(transfers) == 1
    t = transfers[0]
    assert t["tx_hash"] == TX_A
    assert t["from"] == BUYER
    assert t["amount"] == Decimal("1")
    assert t["payment_method"] == "HYPE"
    assert t["block_number"] == 10


def test_token_transfers_use_configured_decimals():
    reader = FakeChainReader(logs={TOKEN: [transfer_event(BUYER, 2_500_000, TX_A, 50)]})

    transfers = fetch_token_transfers(reader, 0, 100, WALLET, TOKENS)

    assert [t["amount"] for t in transfers] == [Decimal("2.5")]
    assert transfers[0]["payment_method"] == "USDT0"
    assert ("token_decimals", TOKEN) not in reader.calls


def test_token_transfers_read_decimals_from_contract_when_unset():
    reader = FakeChainReader(
        logs={TOKEN: [transfer_event(BUYER, 3 * 10 ** 18, TX_A, 50)]},
        decimals={TOKEN: 18},
    )

    transfers = fetch_token_transfers(reader, 0, 100, WALLET, {"WETH": {"address": TOKEN, "decimals": None}})

    assert transfers[0]["amount"] == Decimal("3")
    assert transfers[0]["payment_method"] == "WETH"


def test_token_transfers_drop_other_recipients_and_zero_value():
    reader = FakeChainReader(logs={TOKEN: [
        transfer_event(BUYER, 1_000_000, TX_A, 50, to="0x" + "99" * 20),
        transfer_event(BUYER, 0, TX_B, 51),
    ]})

    assert fetch_token_transfers(reader, 0, 100, WALLET, TOKENS) == []


def test_collect_transfers_skips_native_scan_when_not_needed():
    reader = FakeChainReader(logs={TOKEN: [transfer_event(BUYER, 1_000_000, TX_A, 50)]})

    transfers = collect_transfers(reader, 0, 100, WALLET, include_native=False, tokens=TOKENS)

    assert len(transfers) == 1
    assert not any(call[0] == "iter_blocks" for call in reader.calls)


def test_collect_transfers_dedupes_repeated_logs():
    event = transfer_event(BUYER, 1_000_000, TX_A, 50, log_index=3)
    reader = FakeChainReader(logs={TOKEN: [event, dict(event)]})

    transfers = collect_transfers(reader, 0, 100, WALLET, include_native=False, tokens=TOKENS)

    assert len(transfers) == 1
    assert transfers[0]["log_index"] == 3
