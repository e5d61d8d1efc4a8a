from iron_coach.fingerprint import build_fingerprint, canonical_json, payload_size

# ---------------------------------------------------------------------------
# Canonical serialization
# ---------------------------------------------------------------------------

def test_canonical_json_ignores_key_order():
    a = {"b": 1, "a": {"y": [1, 2], "x": None}}
    b = {"a": {"x": None, "y": [1, 2]}, "b": 1}
    assert canonical_json(a) == canonical_json(b)
    assert canonical_json(a) == '{"a":{"x":null,"y":[1,2]},"b":1}'

def test_payload_size_counts_utf8_bytes():
    assert payload_size({"name": "é"}) == len('{"name":"é"}'.encode("utf-8"))

# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------

def test_fingerprint_is_deterministic_across_key_order():
    first = build_fingerprint({"sessions": [1, 2], "gym": "Home"})
    second = build_fingerprint({"gym": "Home", "sessions": [1, 2]})
    assert first == second
    assert first.algorithm == "sha256"
    assert len(first.hash) == 64

def test_fingerprint_changes_with_content():
    assert build_fingerprint({"gym": "Home"}).hash != build_fingerprint({"gym": "Away"}).hash

def test_fingerprint_list_order_matters():
    assert build_fingerprint([1, 2]).hash != build_fingerprint([2, 1]).hash

def test_fingerprint_measures_size_unless_overridden():
    payload = {"gym": "Home"}
    assert build_fingerprint(payload).context_bytes == payload_size(payload)
    assert build_fingerprint(payload, context_bytes=4096).context_bytes == 4096
