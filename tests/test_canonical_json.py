import pytest

from egp_gateway.crypto import canonical_json_bytes, canonical_json_dumps
from egp_gateway.errors import (
    EGP_E_CANON_DEPTH,
    EGP_E_CANON_INT_TOO_LARGE,
    EGP_E_CANON_KEY_COLLISION,
    EGP_E_CANON_KEY_TYPE,
    EGP_E_CANON_NON_JSON,
    EGP_E_CANON_NONFINITE,
    EGPError,
)


def test_keys_sorted_and_compact():
    s = canonical_json_dumps({"b": 1, "a": [True, None, "x"], "c": {"z": 0, "y": 1.5}})
    assert s == '{"a":[true,null,"x"],"b":1,"c":{"y":1.5,"z":0}}'


def test_token_shaped_payload_matches_jq_style_encoding():
    payload = {
        "version": 1,
        "subject_key": "alice",
        "decision": True,
        "metric_value": 152,
        "threshold": 140,
        "expires_at": 1730000000,
        "nonce": "00" * 16,
    }
    assert canonical_json_bytes(payload) == (
        b'{"decision":true,"expires_at":1730000000,"metric_value":152,'
        b'"nonce":"00000000000000000000000000000000","subject_key":"alice",'
        b'"threshold":140,"version":1}'
    )


def test_utf8_preserved_not_escaped():
    assert canonical_json_bytes({"k": "caf\u00e9"}) == b'{"k":"caf\xc3\xa9"}'


def test_strings_are_nfc_normalized():
    decomposed = "cafe\u0301"
    composed = "caf\u00e9"
    assert canonical_json_dumps({"k": decomposed}) == canonical_json_dumps({"k": composed})


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_rejected(value):
    with pytest.raises(EGPError) as ei:
        canonical_json_dumps({"x": value})
    assert ei.value.code == EGP_E_CANON_NONFINITE
    assert ei.value.details["path"] == "$['x']"


def test_non_string_key_rejected():
    with pytest.raises(EGPError) as ei:
        canonical_json_dumps({1: "a"})
    assert ei.value.code == EGP_E_CANON_KEY_TYPE


def test_key_collision_after_normalization_rejected():
    with pytest.raises(EGPError) as ei:
        canonical_json_dumps({"cafe\u0301": 1, "caf\u00e9": 2})
    assert ei.value.code == EGP_E_CANON_KEY_COLLISION


def test_depth_limit():
    obj = []
    for _ in range(70):
        obj = [obj]
    with pytest.raises(EGPError) as ei:
        canonical_json_dumps(obj)
    assert ei.value.code == EGP_E_CANON_DEPTH


def test_huge_integer_rejected():
    with pytest.raises(EGPError) as ei:
        canonical_json_dumps({"n": 10 ** 200})
    assert ei.value.code == EGP_E_CANON_INT_TOO_LARGE


def test_non_json_type_rejected():
    with pytest.raises(EGPError) as ei:
        canonical_json_dumps({"s": {1, 2}})
    assert ei.value.code == EGP_E_CANON_NON_JSON


def test_bool_stays_bool():
    assert canonical_json_dumps([True, 1, False, 0]) == "[true,1,false,0]"
