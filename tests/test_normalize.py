from hexbytes import HexBytes

from orderstake_indexer.normalize import amount, format_address, format_amount, label, normalize_log, stringify

LOWER = "0x" + "ab" * 20


def test_format_amount():
    assert format_amount(1500000000000000000) == "1.5"
    assert format_amount(0) == "0.0"
    assert format_amount(100 * 10**18) == "100.0"
    assert format_amount("2500000", 6) == "2.5"
    assert format_amount(1, 18) == "0.000000000000000001"
    assert format_amount(12345, 0) == "12345.0"
    assert format_amount(None) == "0.0"
    assert format_amount("garbage") == "0.0"


def test_format_address():
    assert format_address("0x1234567890abcdef1234567890abcdef12345678") == "0x1234...5678"
    assert format_address(None) == "0x0000...0000"
    assert format_address("") == "0x0000...0000"


def test_stringify_keeps_big_ints_exact():
    big = 2**256 - 1
    assert stringify(big) == str(big)
    assert stringify(True) is True
    assert stringify(None) is None
    assert stringify(HexBytes("0x0102")) == "0x0102"
    assert stringify((1, [2, {"x": 3}])) == ["1", ["2", {"x": "3"}]]
    assert stringify("hello") == "hello"


def test_normalize_log():
    log = {
        "event": "WhitelistUpdated",
        "address": LOWER,
        "blockNumber": 42,
        "transactionHash": HexBytes("0x" + "CD" * 32),
        "logIndex": 3,
        "args": {"account": LOWER, "status": True, "amount": 3 * 10**18},
    }
    rules = {"status": label("Whitelisted", "Removed"), "amount": amount()}

    record = normalize_log(log, "EcosystemStakingFactory", rules, {"pool": "0x6666...6666"})

    assert record.event_name == "WhitelistUpdated"
    assert record.contract_address.lower() == LOWER
    assert record.contract_address != LOWER
    assert record.transaction_hash == "0x" + "cd" * 32
    assert record.key == ("0x" + "cd" * 32, "WhitelistUpdated", 3)
    assert record.args == {"account": record.contract_address, "status": True, "amount": "3000000000000000000"}
    assert record.display["status"] == "Whitelisted"
    assert record.display["amount"] == "3.0"
    assert record.display["account"] == record.contract_address[:6] + "..." + record.contract_address[-4:]
    assert record.display["pool"] == "0x6666...6666"


def test_label_off_value():
    assert label("Whitelisted", "Removed")(False) == "Removed"
