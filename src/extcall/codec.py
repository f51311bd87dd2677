"""JSON wire codec for discovery and provisioning messages.

Key names are fixed and never renamed between protocol versions.  Decoders
collect every problem they find before raising a single ``SchemaError``.

The provisioning ``inventory`` field is a JSON document encoded as a string
inside the outer document, so it is encoded and decoded twice.
"""

from __future__ import annotations

import json
from typing import Any

from extcall.errors import SchemaError
from extcall.models import (
    DiscoveryReply,
    DiscoveryRequest,
    Ed25519PubKey,
    FactFilter,
    Filter,
    ProvisioningReply,
    ProvisioningRequest,
)

__all__ = [
    "decode_discovery_reply",
    "decode_discovery_request",
    "decode_filter",
    "decode_provisioning_reply",
    "decode_provisioning_request",
    "encode_discovery_reply",
    "encode_discovery_request",
    "encode_filter",
    "encode_provisioning_reply",
    "encode_provisioning_request",
    "load_json_object",
]

_FILTER_KEYS = ("fact", "cf_class", "agent", "compound", "identity")
_MISSING: object = object()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def encode_filter(flt: Filter) -> dict[str, Any]:
    return {
        "fact": [
            {"fact": item.fact, "operator": item.operator, "value": item.value}
            for item in flt.fact
        ],
        "cf_class": list(flt.cf_class),
        "agent": list(flt.agent),
        "compound": list(flt.compound),
        "identity": list(flt.identity),
    }


def encode_discovery_request(request: DiscoveryRequest) -> bytes:
    payload: dict[str, Any] = {
        "$schema": request.schema,
        "protocol": request.protocol,
        "filter": encode_filter(request.filter),
        "collective": request.collective,
        "timeout": request.timeout,
    }
    if request.federations is not None:
        payload["federations"] = list(request.federations)
    if request.options is not None:
        payload["options"] = dict(request.options)
    return _dump(payload)


def decode_discovery_request(raw: bytes | str) -> DiscoveryRequest:
    """Decode a discovery request, failing on any missing or mistyped field."""
    data = load_json_object(raw)
    errors: list[str] = []

    schema = _required_str(data.get("$schema", _MISSING), "$schema", errors)
    protocol = _required_str(data.get("protocol", _MISSING), "protocol", errors)
    collective = _required_str(data.get("collective", _MISSING), "collective", errors)
    timeout = _timeout(data.get("timeout", _MISSING), errors)
    flt = _filter(data.get("filter", _MISSING), "filter", errors)

    federations_raw = data.get("federations", _MISSING)
    federations = None
    if federations_raw is not _MISSING and federations_raw is not None:
        federations = _str_list(federations_raw, "federations", errors)

    options_raw = data.get("options", _MISSING)
    options = None
    if options_raw is not _MISSING and options_raw is not None:
        options = _str_mapping(options_raw, "options", errors)

    if errors or schema is None or protocol is None or collective is None:
        raise SchemaError(errors, payload=raw)
    if timeout is None or flt is None:
        raise SchemaError(errors, payload=raw)
    return DiscoveryRequest(
        schema=schema,
        protocol=protocol,
        filter=flt,
        collective=collective,
        timeout=timeout,
        federations=federations,
        options=options,
    )


def decode_filter(value: Any) -> Filter:
    """Decode an already-parsed filter mapping."""
    errors: list[str] = []
    flt = _filter(value, "filter", errors)
    if errors or flt is None:
        raise SchemaError(errors)
    return flt


def encode_discovery_reply(reply: DiscoveryReply) -> bytes:
    if reply.error is not None:
        return _dump({"error": reply.error})
    return _dump({"protocol": reply.protocol, "nodes": list(reply.nodes or [])})


def decode_discovery_reply(raw: bytes | str) -> DiscoveryReply:
    """Decode a discovery reply, enforcing that exactly one variant is present.

    An ``error`` key holding an empty string counts as absent.
    """
    data = load_json_object(raw)

    error = data.get("error")
    has_error = error is not None and error != ""
    has_protocol = "protocol" in data and data["protocol"] is not None
    has_nodes = "nodes" in data and data["nodes"] is not None

    if has_error and (has_protocol or has_nodes):
        raise SchemaError(
            ["reply must contain either 'error' or 'protocol' and 'nodes', not both"],
            payload=raw,
        )

    if has_error:
        if not isinstance(error, str):
            raise SchemaError(["error must be a string"], payload=raw)
        return DiscoveryReply(error=error)

    errors: list[str] = []
    if not has_protocol and not has_nodes:
        raise SchemaError(
            ["reply must contain either 'error' or 'protocol' and 'nodes'"],
            payload=raw,
        )
    protocol = _required_str(data.get("protocol", _MISSING), "protocol", errors)
    nodes_raw = data.get("nodes", _MISSING)
    nodes: list[str] | None = None
    if nodes_raw is _MISSING or nodes_raw is None:
        errors.append("nodes is required")
    else:
        nodes = _str_list(nodes_raw, "nodes", errors)

    if errors:
        raise SchemaError(errors, payload=raw)
    return DiscoveryReply(protocol=protocol, nodes=nodes)


# ---------------------------------------------------------------------------
# Provisioning
# ---------------------------------------------------------------------------


def encode_provisioning_request(request: ProvisioningRequest) -> bytes:
    pubkey: dict[str, Any] = dict(request.ed25519_pubkey.extra)
    pubkey["directory"] = request.ed25519_pubkey.directory
    return _dump(
        {
            "identity": request.identity,
            "ed25519_pubkey": pubkey,
            "inventory": json.dumps(request.inventory),
        }
    )


def decode_provisioning_request(raw: bytes | str) -> ProvisioningRequest:
    """Decode a provisioning request, re-parsing the nested inventory document.

    A missing ``directory`` decodes as an empty string so the helper can
    defer the node instead of failing outright.
    """
    data = load_json_object(raw)
    errors: list[str] = []

    identity = _required_str(data.get("identity", _MISSING), "identity", errors)

    pubkey: Ed25519PubKey | None = None
    pubkey_raw = data.get("ed25519_pubkey", _MISSING)
    if pubkey_raw is _MISSING:
        errors.append("ed25519_pubkey is required")
    elif not isinstance(pubkey_raw, dict):
        errors.append("ed25519_pubkey must be a mapping")
    else:
        directory = pubkey_raw.get("directory", "")
        if not isinstance(directory, str):
            errors.append("ed25519_pubkey.directory must be a string")
        else:
            extra = {key: value for key, value in pubkey_raw.items() if key != "directory"}
            pubkey = Ed25519PubKey(directory=directory, extra=extra)

    inventory: dict[str, Any] | None = None
    inventory_raw = data.get("inventory", _MISSING)
    if inventory_raw is _MISSING:
        errors.append("inventory is required")
    elif not isinstance(inventory_raw, str):
        errors.append("inventory must be a JSON document encoded as a string")
    else:
        try:
            inner = json.loads(inventory_raw)
        except json.JSONDecodeError as exc:
            errors.append(f"inventory is not valid JSON: {exc}")
        else:
            if isinstance(inner, dict):
                inventory = inner
            else:
                errors.append("inventory must encode a JSON object")

    if errors or identity is None or pubkey is None or inventory is None:
        raise SchemaError(errors, payload=raw)
    return ProvisioningRequest(identity=identity, ed25519_pubkey=pubkey, inventory=inventory)


def encode_provisioning_reply(reply: ProvisioningReply) -> bytes:
    return _dump(
        {
            "defer": reply.defer,
            "msg": reply.msg,
            "certificate": reply.certificate,
            "ca": reply.ca,
            "configuration": dict(reply.configuration),
            "server_claims": dict(reply.server_claims),
        }
    )


def decode_provisioning_reply(raw: bytes | str) -> ProvisioningReply:
    """Decode a provisioning reply.

    ``defer`` and ``msg`` are required.  The remaining keys may be absent or
    null but must have the right type when given.
    """
    data = load_json_object(raw)
    errors: list[str] = []

    defer = data.get("defer", _MISSING)
    if defer is _MISSING:
        errors.append("defer is required")
    elif not isinstance(defer, bool):
        errors.append("defer must be a boolean")

    msg = data.get("msg", _MISSING)
    if msg is _MISSING:
        errors.append("msg is required")
    elif not isinstance(msg, str):
        errors.append("msg must be a string")

    certificate = _optional_str(data.get("certificate"), "certificate", errors)
    ca = _optional_str(data.get("ca"), "ca", errors)

    configuration: dict[str, str] = {}
    configuration_raw = data.get("configuration")
    if configuration_raw is not None:
        configuration = _str_mapping(configuration_raw, "configuration", errors) or {}

    server_claims: dict[str, Any] = {}
    claims_raw = data.get("server_claims")
    if claims_raw is not None:
        if isinstance(claims_raw, dict):
            server_claims = claims_raw
        else:
            errors.append("server_claims must be a mapping")

    if errors or not isinstance(defer, bool) or not isinstance(msg, str):
        raise SchemaError(errors, payload=raw)
    return ProvisioningReply(
        defer=defer,
        msg=msg,
        certificate=certificate,
        ca=ca,
        configuration=configuration,
        server_claims=server_claims,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def load_json_object(raw: bytes | str) -> dict[str, Any]:
    """Parse ``raw`` as a single JSON object."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise SchemaError([f"payload is not valid JSON: {exc}"], payload=raw) from exc
    if not isinstance(data, dict):
        raise SchemaError(["payload must be a JSON object"], payload=raw)
    return data


def _dump(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def _filter(value: Any, path: str, errors: list[str]) -> Filter | None:
    if value is _MISSING:
        errors.append(f"{path} is required")
        return None
    if not isinstance(value, dict):
        errors.append(f"{path} must be a mapping")
        return None

    missing = [key for key in _FILTER_KEYS if key not in value]
    for key in missing:
        errors.append(f"{path}.{key} is required")
    if missing:
        return None

    facts = _facts(value["fact"], f"{path}.fact", errors)
    classes = _str_list(value["cf_class"], f"{path}.cf_class", errors)
    agents = _str_list(value["agent"], f"{path}.agent", errors)
    compound = _compound(value["compound"], f"{path}.compound", errors)
    identities = _str_list(value["identity"], f"{path}.identity", errors)

    if facts is None or classes is None or agents is None:
        return None
    if compound is None or identities is None:
        return None
    return Filter(
        fact=facts,
        cf_class=classes,
        agent=agents,
        compound=compound,
        identity=identities,
    )


def _facts(value: Any, path: str, errors: list[str]) -> list[FactFilter] | None:
    if not isinstance(value, list):
        errors.append(f"{path} must be a list")
        return None
    facts: list[FactFilter] = []
    ok = True
    for index, item in enumerate(value):
        location = f"{path}[{index}]"
        if not isinstance(item, dict):
            errors.append(f"{location} must be a mapping")
            ok = False
            continue
        fact = _required_str(item.get("fact", _MISSING), f"{location}.fact", errors)
        operator = _required_str(item.get("operator", _MISSING), f"{location}.operator", errors)
        fact_value = item.get("value", _MISSING)
        if fact_value is _MISSING:
            errors.append(f"{location}.value is required")
        elif not isinstance(fact_value, str):
            errors.append(f"{location}.value must be a string")
        if fact is None or operator is None or not isinstance(fact_value, str):
            ok = False
            continue
        facts.append(FactFilter(fact=fact, operator=operator, value=fact_value))
    return facts if ok else None


def _compound(value: Any, path: str, errors: list[str]) -> list[Any] | None:
    if not isinstance(value, list):
        errors.append(f"{path} must be a list")
        return None
    ok = True
    for index, item in enumerate(value):
        if isinstance(item, str):
            continue
        if isinstance(item, list) and all(isinstance(entry, dict) for entry in item):
            continue
        errors.append(f"{path}[{index}] must be a string or a list of mappings")
        ok = False
    return list(value) if ok else None


def _required_str(value: Any, path: str, errors: list[str]) -> str | None:
    if value is _MISSING:
        errors.append(f"{path} is required")
        return None
    if not isinstance(value, str):
        errors.append(f"{path} must be a string")
        return None
    return value


def _optional_str(value: Any, path: str, errors: list[str]) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        errors.append(f"{path} must be a string")
        return ""
    return value


def _str_list(value: Any, path: str, errors: list[str]) -> list[str] | None:
    if not isinstance(value, list):
        errors.append(f"{path} must be a list of strings")
        return None
    bad = [index for index, item in enumerate(value) if not isinstance(item, str)]
    for index in bad:
        errors.append(f"{path}[{index}] must be a string")
    if bad:
        return None
    return list(value)


def _str_mapping(value: Any, path: str, errors: list[str]) -> dict[str, str] | None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be a mapping of strings")
        return None
    bad = sorted(key for key, item in value.items() if not isinstance(item, str))
    for key in bad:
        errors.append(f"{path}.{key} must be a string")
    if bad:
        return None
    return dict(value)


def _timeout(value: Any, errors: list[str]) -> int | None:
    if value is _MISSING:
        errors.append("timeout is required")
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        errors.append("timeout must be a number of seconds")
        return None
    if isinstance(value, float):
        if not value.is_integer():
            errors.append("timeout must be a whole number of seconds")
            return None
        value = int(value)
    if value <= 0:
        errors.append("timeout must be positive")
        return None
    return value
