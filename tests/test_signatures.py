import hashlib
import hmac

from gateways.signatures import (
    canonical_signing_string,
    compute_signature,
    has_required_fields,
    verify_signature,
)

SECRET = "whsec_test"


def test_signing_string_sorts_drops_empty_and_signature():
    payload = {"b": "2", "a": "1", "empty": "", "none": None, "signature": "abc", "list": []}
    assert canonical_signing_string(payload) == "a=1&b=2"


def test_signing_string_encodes_like_uri_component():
    payload = {"desc": "Deal Room & more", "note": "it's (ok)!"}
    assert canonical_signing_string(payload) == "desc=Deal%20Room%20%26%20more&note=it's%20(ok)!"


def test_signing_string_stringifies_nested_and_booleans():
    payload = {"flag": True, "amount": 100.0, "nested": {"z": 1, "a": "x"}}
    assert canonical_signing_string(payload) == (
        "amount=100&flag=true&nested=%7B%22a%22%3A%22x%22%2C%22z%22%3A1%7D"
    )


def test_compute_signature_is_hmac_sha256_of_canonical_string():
    payload = {"cartid": "DR_1", "status": "A"}
    expected = hmac.new(SECRET.encode(), b"cartid=DR_1&status=A", hashlib.sha256).hexdigest()
    assert compute_signature(payload, SECRET) == expected


def test_verify_accepts_valid_signature_case_insensitively():
    payload = {"cartid": "DR_1", "status": "A"}
    signature = compute_signature(payload, SECRET)
    assert verify_signature(payload, signature, SECRET)
    assert verify_signature({**payload, "signature": signature}, signature.upper(), SECRET)


def test_verify_rejects_tampering_and_missing_inputs():
    payload = {"cartid": "DR_1", "status": "A"}
    signature = compute_signature(payload, SECRET)
    assert not verify_signature({**payload, "status": "E"}, signature, SECRET)
    assert not verify_signature(payload, signature, "other-secret")
    assert not verify_signature(payload, None, SECRET)
    assert not verify_signature(payload, signature, "")
    assert not verify_signature(payload, signature[:-2], SECRET)


def test_has_required_fields():
    assert has_required_fields({"cartid": "x", "status": "A"}, ["cartid"], ["status"])
    assert not has_required_fields({"cartid": "x"}, ["cartid"], ["status"])
    assert not has_required_fields(["not", "a", "dict"], ["cartid"], ["status"])
