import pytest

from facilitator.payments.classifier import Creation, Invalid, Usage, classify, parse_amount


def _creation(**overrides):
    payload = {
        "signature": "0xsig",
        "authorization": {
            "from": "0xAbC0000000000000000000000000000000000001",
            "to": "0x0e3df9510de65469c4518d7843919c0b8c7a7757",
            "value": "10000000",
            "validAfter": "0",
            "validBefore": "1900000000",
            "nonce": "0x" + "ab" * 32,
        },
        "sessionParams": {"salt": "0x01", "authorizationExpiry": 1800000000, "refundExpiry": "1900000000"},
    }
    payload.update(overrides)
    return payload


def _usage(**overrides):
    payload = {"session": {"id": "0xsess", "token": "sess_abc"}, "amount": "1000", "requestId": "req-1"}
    payload.update(overrides)
    return payload


def test_classify_creation():
    res = classify(_creation())
    assert isinstance(res, Creation)
    assert res.authorization.value == 10_000_000
    assert res.session_params.refund_expiry == 1_900_000_000
    assert res.payer == "0xabc0000000000000000000000000000000000001"
    assert res.effective_request_id() == "initial:0x" + "ab" * 32


def test_creation_keeps_explicit_request_id():
    res = classify(_creation(requestId="req-0"))
    assert res.effective_request_id() == "req-0"


def test_classify_usage():
    res = classify(_usage())
    assert isinstance(res, Usage)
    assert res.amount == 1000
    assert res.request_id == "req-1"


@pytest.mark.parametrize("extra", ["signature", "authorization", "sessionParams"])
def test_usage_with_signature_fields_is_invalid(extra):
    payload = _usage(**{extra: "0xsig" if extra == "signature" else {}})
    res = classify(payload)
    assert isinstance(res, Invalid)
    assert res.reason == "unexpected_signature"


def test_both_shapes_is_ambiguous():
    res = classify(_creation(session={"id": "0xsess", "token": "sess_abc"}, amount="1"))
    assert res == Invalid(reason="ambiguous_payload")


def test_no_shape_is_unrecognized():
    assert classify({"foo": "bar"}).reason == "unrecognized_payload"
    assert classify("not-a-dict").reason == "invalid_payload"


@pytest.mark.parametrize("amount", [1000, "10.5", "-1", "", "1e6"])
def test_usage_amount_must_be_decimal_string(amount):
    res = classify(_usage(amount=amount))
    assert res.reason == "invalid_usage_payload"


def test_usage_without_request_id_is_invalid():
    payload = _usage()
    del payload["requestId"]
    assert classify(payload).reason == "invalid_usage_payload"


def test_creation_with_bad_value_is_invalid():
    payload = _creation()
    payload["authorization"]["value"] = 10
    assert classify(payload).reason == "invalid_creation_payload"


def test_parse_amount():
    assert parse_amount("0") == 0
    with pytest.raises(ValueError):
        parse_amount(5)
