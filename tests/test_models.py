import pytest

from txwatch.errors import InvalidAddress
from txwatch.models import Block, SubscriptionState, Transaction, normalize_address, parse_hex_quantity, to_hex_quantity


def test_parse_hex_quantity():
    assert parse_hex_quantity("0x0") == 0
    assert parse_hex_quantity("0x3e8") == 1000
    assert parse_hex_quantity("0xffffffffffffffff") == 2**64 - 1
    assert to_hex_quantity(1000) == "0x3e8"
    for bad in ("3e8", "0x", "", None):
        with pytest.raises(ValueError):
            parse_hex_quantity(bad)
    with pytest.raises(ValueError):
        to_hex_quantity(-1)


def test_normalize_address():
    mixed = "0x" + "aB" * 20
    assert normalize_address(mixed) == mixed.lower()
    assert normalize_address("  " + mixed + "\n") == mixed.lower()
    assert normalize_address("alice") == "alice"
    for bad in ("", "   ", None, "0x123", "0x" + "zz" * 20, "two words"):
        with pytest.raises(InvalidAddress):
            normalize_address(bad)


def test_transaction_from_rpc_and_touches():
    a, b = "0x" + "aa" * 20, "0x" + "bb" * 20
    t = Transaction.from_rpc({"hash": "0x01", "from": a.upper().replace("0X", "0x"), "to": None, "value": "0x5"}, 7)
    assert t.sender == a
    assert t.recipient is None
    assert t.touches(a)
    assert not t.touches(b)
    assert Transaction.from_dict(t.to_dict()) == t


def test_block_ignores_hash_only_transactions():
    blk = Block.from_rpc({"hash": "0xb", "transactions": ["0x01", "0x02"]}, 3)
    assert blk.transactions == ()


def test_self_transfer_matches_once():
    a = "0x" + "aa" * 20
    blk = Block.from_rpc({"transactions": [{"hash": "0x01", "from": a, "to": a, "value": "0x1"}]}, 1)
    assert len(blk.matching(a)) == 1


def test_subscription_copy_is_isolated():
    st = SubscriptionState(address="x", last_processed_height=1)
    cp = st.copy()
    cp.transactions.append(Transaction("0x1", 1, "x", None, "0x0"))
    assert st.transactions == []


def test_null_value_defaults_to_zero():
    t = Transaction.from_rpc({"hash": "0x01", "from": "0x" + "aa" * 20, "to": None, "value": None}, 1)
    assert t.value == "0x0"
