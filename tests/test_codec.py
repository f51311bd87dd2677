"""Tests for the JSON wire codec."""

from __future__ import annotations

import json
from typing import Any

import pytest

from extcall.codec import (
    decode_discovery_reply,
    decode_discovery_request,
    decode_filter,
    decode_provisioning_reply,
    decode_provisioning_request,
    encode_discovery_reply,
    encode_discovery_request,
    encode_filter,
    encode_provisioning_reply,
    encode_provisioning_request,
    load_json_object,
)
from extcall.errors import SchemaError
from extcall.models import (
    DISCOVERY_REPLY_PROTOCOL,
    DISCOVERY_REQUEST_PROTOCOL,
    DISCOVERY_REQUEST_SCHEMA,
    DiscoveryReply,
    DiscoveryRequest,
    Ed25519PubKey,
    FactFilter,
    Filter,
    ProvisioningReply,
    ProvisioningRequest,
)


def _scenario_filter() -> Filter:
    return Filter(fact=[FactFilter("country", "==", "mt")], agent=["rpcutil"])


def _request_dict(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "$schema": DISCOVERY_REQUEST_SCHEMA,
        "protocol": DISCOVERY_REQUEST_PROTOCOL,
        "filter": encode_filter(_scenario_filter()),
        "collective": "ginkgo",
        "timeout": 2,
    }
    data.update(overrides)
    return data


# -- Discovery requests ----------------------------------------------------


class TestDiscoveryRequest:
    def test_encodes_every_filter_key(self) -> None:
        request = DiscoveryRequest(filter=_scenario_filter(), collective="ginkgo", timeout=2)
        data = json.loads(encode_discovery_request(request))
        assert data["$schema"] == DISCOVERY_REQUEST_SCHEMA
        assert data["protocol"] == DISCOVERY_REQUEST_PROTOCOL
        assert data["collective"] == "ginkgo"
        assert data["timeout"] == 2
        assert data["filter"] == {
            "fact": [{"fact": "country", "operator": "==", "value": "mt"}],
            "cf_class": [],
            "agent": ["rpcutil"],
            "compound": [],
            "identity": [],
        }
        assert "options" not in data
        assert "federations" not in data

    def test_round_trip_preserves_empty_collections(self) -> None:
        request = DiscoveryRequest(
            filter=_scenario_filter(),
            collective="ginkgo",
            timeout=2,
            options={},
            federations=[],
        )
        decoded = decode_discovery_request(encode_discovery_request(request))
        assert decoded == request
        assert decoded.filter.cf_class == []
        assert decoded.options == {}
        assert decoded.federations == []

    def test_round_trip_with_compound_and_options(self) -> None:
        request = DiscoveryRequest(
            filter=Filter(
                cf_class=["apache"],
                compound=["with('apache') and country=mt", [{"statement": "x"}]],
                identity=["/^web/"],
            ),
            collective="production",
            timeout=10,
            options={"query": "role=web"},
            federations=["eu", "us"],
        )
        assert decode_discovery_request(encode_discovery_request(request)) == request

    def test_missing_filter_key_is_an_error(self) -> None:
        data = _request_dict()
        del data["filter"]["cf_class"]
        with pytest.raises(SchemaError, match=r"filter\.cf_class is required"):
            decode_discovery_request(json.dumps(data))

    def test_missing_schema_is_an_error(self) -> None:
        data = _request_dict()
        del data["$schema"]
        with pytest.raises(SchemaError, match=r"\$schema is required"):
            decode_discovery_request(json.dumps(data))

    def test_collects_every_problem(self) -> None:
        data = _request_dict(collective=5, timeout="soon")
        with pytest.raises(SchemaError) as excinfo:
            decode_discovery_request(json.dumps(data))
        assert "collective must be a string" in excinfo.value.errors
        assert "timeout must be a number of seconds" in excinfo.value.errors

    @pytest.mark.parametrize("timeout", [0, -1, 1.5, True])
    def test_rejects_bad_timeouts(self, timeout: Any) -> None:
        with pytest.raises(SchemaError):
            decode_discovery_request(json.dumps(_request_dict(timeout=timeout)))

    def test_accepts_integral_float_timeout(self) -> None:
        decoded = decode_discovery_request(json.dumps(_request_dict(timeout=3.0)))
        assert decoded.timeout == 3
        assert isinstance(decoded.timeout, int)

    def test_fact_value_must_be_a_string(self) -> None:
        data = _request_dict()
        data["filter"]["fact"] = [{"fact": "cpus", "operator": ">=", "value": 4}]
        with pytest.raises(SchemaError, match=r"filter\.fact\[0\]\.value must be a string"):
            decode_discovery_request(json.dumps(data))

    def test_bad_compound_entry(self) -> None:
        data = _request_dict()
        data["filter"]["compound"] = [42]
        with pytest.raises(SchemaError, match=r"compound\[0\]"):
            decode_discovery_request(json.dumps(data))


class TestFilter:
    def test_decode_filter(self) -> None:
        assert decode_filter(encode_filter(_scenario_filter())) == _scenario_filter()

    def test_decode_filter_rejects_non_mapping(self) -> None:
        with pytest.raises(SchemaError, match="filter must be a mapping"):
            decode_filter([])


# -- Discovery replies -----------------------------------------------------


class TestDiscoveryReply:
    def test_success_round_trip(self) -> None:
        reply = DiscoveryReply.success(["one", "two"])
        encoded = encode_discovery_reply(reply)
        assert json.loads(encoded) == {"protocol": DISCOVERY_REPLY_PROTOCOL, "nodes": ["one", "two"]}
        assert decode_discovery_reply(encoded) == reply

    def test_error_round_trip(self) -> None:
        reply = DiscoveryReply.failure("invalid protocol")
        encoded = encode_discovery_reply(reply)
        assert json.loads(encoded) == {"error": "invalid protocol"}
        assert decode_discovery_reply(encoded) == reply

    def test_empty_nodes_preserved(self) -> None:
        decoded = decode_discovery_reply(encode_discovery_reply(DiscoveryReply.success([])))
        assert decoded.nodes == []

    def test_both_variants_rejected(self) -> None:
        raw = json.dumps({"error": "x", "protocol": DISCOVERY_REPLY_PROTOCOL, "nodes": []})
        with pytest.raises(SchemaError, match="not both"):
            decode_discovery_reply(raw)

    def test_neither_variant_rejected(self) -> None:
        with pytest.raises(SchemaError, match="either"):
            decode_discovery_reply("{}")

    def test_empty_error_counts_as_absent(self) -> None:
        raw = json.dumps({"error": "", "protocol": DISCOVERY_REPLY_PROTOCOL, "nodes": ["a"]})
        assert decode_discovery_reply(raw).nodes == ["a"]

    def test_nodes_required_with_protocol(self) -> None:
        with pytest.raises(SchemaError, match="nodes is required"):
            decode_discovery_reply(json.dumps({"protocol": DISCOVERY_REPLY_PROTOCOL}))

    def test_nodes_must_be_strings(self) -> None:
        raw = json.dumps({"protocol": DISCOVERY_REPLY_PROTOCOL, "nodes": ["a", 1]})
        with pytest.raises(SchemaError, match=r"nodes\[1\] must be a string"):
            decode_discovery_reply(raw)


# -- Provisioning ----------------------------------------------------------


class TestProvisioningRequest:
    def test_inventory_is_double_encoded(self) -> None:
        request = ProvisioningRequest(
            identity="node1.example.net",
            ed25519_pubkey=Ed25519PubKey(directory="/etc/choria/keys"),
            inventory={"facts": {"country": "mt"}},
        )
        data = json.loads(encode_provisioning_request(request))
        assert isinstance(data["inventory"], str)
        assert json.loads(data["inventory"]) == {"facts": {"country": "mt"}}
        assert data["ed25519_pubkey"] == {"directory": "/etc/choria/keys"}

    def test_round_trip_keeps_pubkey_extras(self) -> None:
        request = ProvisioningRequest(
            identity="node1",
            ed25519_pubkey=Ed25519PubKey(directory="/keys", extra={"public_key": "abc"}),
            inventory={},
        )
        assert decode_provisioning_request(encode_provisioning_request(request)) == request

    def test_missing_directory_decodes_as_empty(self) -> None:
        raw = json.dumps({"identity": "n", "ed25519_pubkey": {}, "inventory": "{}"})
        assert decode_provisioning_request(raw).ed25519_pubkey.directory == ""

    def test_inventory_must_be_a_string(self) -> None:
        raw = json.dumps(
            {"identity": "n", "ed25519_pubkey": {"directory": "/k"}, "inventory": {}}
        )
        with pytest.raises(SchemaError, match="encoded as a string"):
            decode_provisioning_request(raw)

    def test_inventory_must_encode_an_object(self) -> None:
        raw = json.dumps(
            {"identity": "n", "ed25519_pubkey": {"directory": "/k"}, "inventory": "[1]"}
        )
        with pytest.raises(SchemaError, match="must encode a JSON object"):
            decode_provisioning_request(raw)


class TestProvisioningReply:
    def test_round_trip(self) -> None:
        reply = ProvisioningReply(
            defer=False,
            msg="Done",
            certificate="CERT",
            ca="CA",
            configuration={"plugin.choria.srv_domain": "example.net"},
            server_claims={"exp": 1},
        )
        encoded = encode_provisioning_reply(reply)
        assert set(json.loads(encoded)) == {
            "defer",
            "msg",
            "certificate",
            "ca",
            "configuration",
            "server_claims",
        }
        assert decode_provisioning_reply(encoded) == reply

    def test_optional_keys_may_be_null(self) -> None:
        raw = json.dumps({"defer": True, "msg": "later", "configuration": None, "ca": None})
        reply = decode_provisioning_reply(raw)
        assert reply.configuration == {}
        assert reply.ca == ""

    def test_defer_and_msg_required(self) -> None:
        with pytest.raises(SchemaError) as excinfo:
            decode_provisioning_reply("{}")
        assert excinfo.value.errors == ["defer is required", "msg is required"]

    def test_configuration_values_must_be_strings(self) -> None:
        raw = json.dumps({"defer": False, "msg": "Done", "configuration": {"port": 4222}})
        with pytest.raises(SchemaError, match=r"configuration\.port must be a string"):
            decode_provisioning_reply(raw)


# -- Helpers ---------------------------------------------------------------


class TestLoadJsonObject:
    def test_invalid_json_quotes_payload(self) -> None:
        with pytest.raises(SchemaError) as excinfo:
            load_json_object(b"not json")
        assert "payload is not valid JSON" in str(excinfo.value)
        assert "'not json'" in str(excinfo.value)
        assert excinfo.value.payload == b"not json"

    def test_array_rejected(self) -> None:
        with pytest.raises(SchemaError, match="must be a JSON object"):
            load_json_object("[]")
