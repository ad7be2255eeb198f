from apps.orders.signatures import manifest, parse_signature, sign, verify_signature

SECRET = "whsec"


def test_manifest_layout():
    assert manifest("123", "req-1", "1704908010") == "id:123;request-id:req-1;ts:1704908010;"


def test_valid_signature_verifies():
    v1 = sign(SECRET, "123", "req-1", "1704908010")
    header = f"ts=1704908010,v1={v1}"
    assert parse_signature(header) == ("1704908010", v1)
    assert verify_signature(SECRET, header, "req-1", "123")


def test_tampered_inputs_do_not_verify():
    v1 = sign(SECRET, "123", "req-1", "1704908010")
    header = f"ts=1704908010,v1={v1}"
    assert not verify_signature(SECRET, header, "req-1", "999")
    assert not verify_signature(SECRET, header, "req-2", "123")
    assert not verify_signature("other", header, "req-1", "123")
    assert not verify_signature(SECRET, f"ts=1704908011,v1={v1}", "req-1", "123")


def test_missing_parts_never_verify():
    assert parse_signature(None) is None
    assert parse_signature("ts=1") is None
    assert not verify_signature(SECRET, None, "req-1", "123")
    assert not verify_signature(SECRET, "ts=1,v1=abc", None, "123")
    assert not verify_signature("", "ts=1,v1=abc", "req-1", "123")
