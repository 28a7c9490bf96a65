# compose_engine.py — Declarative patches over Docker Compose documents
# The document is the plain nested dict PyYAML produces (insertion order is
# kept). Every patch function works on a deep copy and either returns the
# new document or raises ComposeError; the input is never touched, so a
# rejected patch leaves nothing half applied.
#
# Patch shape:
#   {service_changes, add_services, delete_services, rename_services,
#    network_changes, volume_changes, secret_changes, config_changes}
# Applied in the order: delete, rename, add, service changes, top-level
# resources. Reference checks run against the final document.

import re
import copy
import logging
from typing import Any, Dict, List, Optional, Tuple

import yaml

from registry import image_repository

logger = logging.getLogger("berth.compose")

RESTART_POLICIES = ("no", "always", "on-failure", "unless-stopped")
_RESTART_RE = re.compile(r"^(no|always|unless-stopped|on-failure(:\d+)?)$")
_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$")

SERVICE_FIELDS = frozenset({
    "image", "restart", "environment", "labels", "ports", "volumes",
    "networks", "command", "entrypoint",
})
CHANGE_KEYS = frozenset({
    "service_changes", "add_services", "delete_services", "rename_services",
    "network_changes", "volume_changes", "secret_changes", "config_changes",
})
DEFAULT_NETWORK = "default"


class ComposeError(ValueError):
    """A patch or document the engine refuses; the message is user-facing."""


# ============================================================
# DOCUMENT I/O
# ============================================================

def parse_document(text: str) -> Dict[str, Any]:
    try:
        doc = yaml.safe_load(text or "")
    except yaml.YAMLError as e:
        raise ComposeError(f"invalid compose YAML: {e}")
    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ComposeError("compose document must be a mapping")
    services = doc.get("services")
    if services is not None and not isinstance(services, dict):
        raise ComposeError("'services' must be a mapping")
    return doc


def dump_document(doc: Dict[str, Any]) -> str:
    return yaml.safe_dump(doc, sort_keys=False, default_flow_style=False, allow_unicode=True)


def canonicalize(text: str) -> str:
    return dump_document(parse_document(text))


# ============================================================
# PORTS & VOLUMES
# ============================================================

def _split_protocol(spec: str) -> Tuple[str, str]:
    if "/" in spec:
        spec, protocol = spec.rsplit("/", 1)
        return spec, protocol.lower() or "tcp"
    return spec, "tcp"


def parse_port(value: Any) -> Dict[str, str]:
    """Short or long port syntax -> {target, published?, host_ip?, protocol}.

    "8080:80"               -> {published: "8080", target: "80", protocol: "tcp"}
    "127.0.0.1:8080:80/udp" -> {host_ip: "127.0.0.1", published: "8080", target: "80", protocol: "udp"}
    """
    if isinstance(value, dict):
        target = value.get("target")
        if target is None or str(target).strip() == "":
            raise ComposeError("port target is required")
        port = {"target": str(target).strip()}
        published = value.get("published")
        if published is not None and str(published).strip() != "":
            port["published"] = str(published).strip()
        host_ip = value.get("host_ip")
        if host_ip:
            port["host_ip"] = str(host_ip)
        port["protocol"] = str(value.get("protocol") or "tcp").lower()
        _check_port(port)
        return port

    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ComposeError(f"invalid port specification: {value!r}")

    spec, protocol = _split_protocol(value.strip())
    host_ip = None
    if spec.startswith("["):
        # [::1]:8080:80
        end = spec.find("]")
        if end == -1 or spec[end + 1:end + 2] != ":":
            raise ComposeError(f"invalid port specification: {value!r}")
        host_ip = spec[1:end]
        spec = spec[end + 2:]
    parts = spec.split(":")
    if host_ip is None and len(parts) == 3:
        host_ip = parts.pop(0)
    if len(parts) == 1:
        port = {"target": parts[0]}
    elif len(parts) == 2:
        port = {"published": parts[0], "target": parts[1]}
        if not parts[0]:
            port.pop("published")
    else:
        raise ComposeError(f"invalid port specification: {value!r}")
    if host_ip:
        port["host_ip"] = host_ip
    port["protocol"] = protocol
    _check_port(port)
    return port


_PORT_RE = re.compile(r"^\d+(-\d+)?$")


def _check_port(port: Dict[str, str]) -> None:
    if not _PORT_RE.match(port["target"]):
        raise ComposeError(f"invalid container port '{port['target']}'")
    if "published" in port and not _PORT_RE.match(port["published"]):
        raise ComposeError(f"invalid published port '{port['published']}'")
    if port["protocol"] not in ("tcp", "udp", "sctp"):
        raise ComposeError(f"invalid port protocol '{port['protocol']}'")


def port_to_compose(port: Dict[str, str]) -> Dict[str, Any]:
    """Long-form entry as written back into the document."""
    out: Dict[str, Any] = {}
    target = port["target"]
    out["target"] = int(target) if target.isdigit() else target
    if port.get("published"):
        out["published"] = port["published"]
    if port.get("host_ip"):
        out["host_ip"] = port["host_ip"]
    out["protocol"] = port.get("protocol", "tcp")
    return out


def _is_path(source: str) -> bool:
    return source.startswith(("/", ".", "~", "$"))


def parse_volume(value: Any) -> Dict[str, Any]:
    """Short or long mount syntax -> {type, source, target, read_only}."""
    if isinstance(value, dict):
        vtype = value.get("type") or ("bind" if _is_path(str(value.get("source") or "")) else "volume")
        if vtype not in ("bind", "volume"):
            raise ComposeError(f"unsupported volume type '{vtype}'")
        target = str(value.get("target") or "").strip()
        if not target:
            raise ComposeError("volume target is required")
        source = str(value.get("source") or "").strip()
        if vtype == "bind" and not source:
            raise ComposeError("bind mount source is required")
        return {
            "type": vtype,
            "source": source,
            "target": target,
            "read_only": bool(value.get("read_only", False)),
        }

    if not isinstance(value, str) or not value.strip():
        raise ComposeError(f"invalid volume specification: {value!r}")
    parts = value.strip().split(":")
    read_only = False
    if len(parts) == 3:
        mode = parts.pop()
        read_only = "ro" in mode.split(",")
    if len(parts) == 1:
        # anonymous volume
        return {"type": "volume", "source": "", "target": parts[0], "read_only": read_only}
    if len(parts) != 2 or not parts[1]:
        raise ComposeError(f"invalid volume specification: {value!r}")
    source, target = parts
    return {
        "type": "bind" if _is_path(source) else "volume",
        "source": source,
        "target": target,
        "read_only": read_only,
    }


def volume_to_compose(volume: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {"type": volume["type"]}
    if volume.get("source"):
        out["source"] = volume["source"]
    out["target"] = volume["target"]
    if volume.get("read_only"):
        out["read_only"] = True
    return out


# ============================================================
# REFERENCES
# ============================================================

def _services(doc: Dict[str, Any]) -> Dict[str, Any]:
    services = doc.get("services")
    if services is None:
        services = {}
        doc["services"] = services
    return services


def service_networks(service: Dict[str, Any]) -> List[str]:
    networks = service.get("networks")
    if isinstance(networks, dict):
        return list(networks.keys())
    if isinstance(networks, list):
        return [n for n in networks if isinstance(n, str)]
    return []


def service_named_volumes(service: Dict[str, Any]) -> List[str]:
    names = []
    for entry in service.get("volumes") or []:
        try:
            volume = parse_volume(entry)
        except ComposeError:
            continue
        if volume["type"] == "volume" and volume["source"]:
            names.append(volume["source"])
    return names


def _service_sources(service: Dict[str, Any], key: str) -> List[str]:
    names = []
    for entry in service.get(key) or []:
        if isinstance(entry, str):
            names.append(entry)
        elif isinstance(entry, dict) and entry.get("source"):
            names.append(str(entry["source"]))
    return names


def _depends_on(service: Dict[str, Any]) -> List[str]:
    deps = service.get("depends_on")
    if isinstance(deps, dict):
        return list(deps.keys())
    if isinstance(deps, list):
        return [d for d in deps if isinstance(d, str)]
    return []


_REFERENCE_READERS = {
    "networks": service_networks,
    "volumes": service_named_volumes,
    "secrets": lambda s: _service_sources(s, "secrets"),
    "configs": lambda s: _service_sources(s, "configs"),
}


def referencing_services(doc: Dict[str, Any], section: str, name: str) -> List[str]:
    reader = _REFERENCE_READERS[section]
    return [
        svc_name for svc_name, svc in (doc.get("services") or {}).items()
        if isinstance(svc, dict) and name in reader(svc)
    ]


# ============================================================
# SERVICE FIELD PATCHES
# ============================================================

def _string_map(value: Any, field: str) -> Dict[str, Optional[str]]:
    """environment/labels in either list or map form -> ordered map."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return {str(k): (None if v is None else _scalar(v)) for k, v in value.items()}
    if isinstance(value, list):
        out: Dict[str, Optional[str]] = {}
        for item in value:
            key, sep, val = str(item).partition("=")
            out[key] = val if sep else None
        return out
    raise ComposeError(f"'{field}' must be a mapping or a list")


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        raise ComposeError("environment and label values must be scalars")
    return str(value)


def _patch_map(service: Dict[str, Any], field: str, patch: Any) -> None:
    if patch is None:
        service.pop(field, None)
        return
    if not isinstance(patch, dict):
        raise ComposeError(f"'{field}' patch must be a mapping")
    current = _string_map(service.get(field), field)
    for key, value in patch.items():
        key = str(key)
        if not key:
            raise ComposeError(f"empty key in '{field}'")
        if value is None:
            current.pop(key, None)
        else:
            current[key] = _scalar(value)
    if current:
        service[field] = current
    else:
        service.pop(field, None)


def _patch_ports(service: Dict[str, Any], patch: Any) -> None:
    if patch is None:
        service.pop("ports", None)
        return
    if not isinstance(patch, list):
        raise ComposeError("'ports' must be a list")
    seen = set()
    ports = []
    for entry in patch:
        port = parse_port(entry)
        key = (port["target"], port.get("published", ""))
        if key in seen:
            raise ComposeError(f"port {port.get('published', '')}:{port['target']} already exists")
        seen.add(key)
        ports.append(port_to_compose(port))
    if ports:
        service["ports"] = ports
    else:
        service.pop("ports", None)


def _patch_volumes(service: Dict[str, Any], patch: Any) -> None:
    if patch is None:
        service.pop("volumes", None)
        return
    if not isinstance(patch, list):
        raise ComposeError("'volumes' must be a list")
    targets = set()
    volumes = []
    for entry in patch:
        volume = parse_volume(entry)
        if volume["target"] in targets:
            raise ComposeError(f"duplicate mount target '{volume['target']}'")
        targets.add(volume["target"])
        volumes.append(volume_to_compose(volume))
    if volumes:
        service["volumes"] = volumes
    else:
        service.pop("volumes", None)


def _patch_networks(service: Dict[str, Any], patch: Any) -> None:
    if patch is None:
        service.pop("networks", None)
        return
    if isinstance(patch, list):
        patch = {name: {} for name in patch}
    if not isinstance(patch, dict):
        raise ComposeError("'networks' must be a mapping")
    networks: Dict[str, Any] = {}
    for name, attach in patch.items():
        if attach is None:
            attach = {}
        if not isinstance(attach, dict):
            raise ComposeError(f"network '{name}' attach config must be a mapping")
        networks[str(name)] = attach
    if networks:
        service["networks"] = networks
    else:
        service.pop("networks", None)


def _patch_args(service: Dict[str, Any], field: str, patch: Any) -> None:
    if patch is None:
        service.pop(field, None)
        return
    values = patch.get("values") if isinstance(patch, dict) else patch
    if not isinstance(values, list) or not all(isinstance(v, (str, int, float)) for v in values):
        raise ComposeError(f"'{field}' must be {{values: [string]}}")
    if values:
        service[field] = [str(v) for v in values]
    else:
        service.pop(field, None)


def apply_service_patch(service: Dict[str, Any], patch: Dict[str, Any], name: str = "") -> None:
    """Apply one service's field patches in place (callers pass a copy)."""
    unknown = set(patch) - SERVICE_FIELDS
    if unknown:
        raise ComposeError(f"unsupported field(s) for service '{name}': {', '.join(sorted(unknown))}")
    for field, value in patch.items():
        if field == "image":
            if not isinstance(value, str) or not value.strip():
                raise ComposeError(f"service '{name}' image must be a non-empty string")
            service["image"] = value.strip()
        elif field == "restart":
            if value is None:
                service.pop("restart", None)
            elif not isinstance(value, str) or not _RESTART_RE.match(value):
                raise ComposeError(
                    f"invalid restart policy '{value}' (expected one of {', '.join(RESTART_POLICIES)})"
                )
            else:
                service["restart"] = value
        elif field in ("environment", "labels"):
            _patch_map(service, field, value)
        elif field == "ports":
            _patch_ports(service, value)
        elif field == "volumes":
            _patch_volumes(service, value)
        elif field == "networks":
            _patch_networks(service, value)
        else:
            _patch_args(service, field, value)


# ============================================================
# DOCUMENT PATCHES
# ============================================================

def _check_name(name: Any, kind: str) -> str:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise ComposeError(f"invalid {kind} name '{name}'")
    return name


def _delete_services(doc: Dict[str, Any], names: Any) -> None:
    if not isinstance(names, list):
        raise ComposeError("delete_services must be a list")
    services = _services(doc)
    for name in names:
        if name not in services:
            raise ComposeError(f"service '{name}' not found")
    remaining = {k: v for k, v in services.items() if k not in names}
    if not remaining:
        raise ComposeError("cannot delete every service")
    for other, svc in remaining.items():
        if isinstance(svc, dict):
            for dep in _depends_on(svc):
                if dep in names:
                    raise ComposeError(f"service '{dep}' is a dependency of '{other}'")
    doc["services"] = remaining


def _rename_services(doc: Dict[str, Any], renames: Any) -> None:
    if not isinstance(renames, dict):
        raise ComposeError("rename_services must be a mapping")
    services = _services(doc)
    for old, new in renames.items():
        if old not in services:
            raise ComposeError(f"service '{old}' not found")
        _check_name(new, "service")
        if new in services and new not in renames:
            raise ComposeError(f"service '{new}' already exists")
    if len(set(renames.values())) != len(renames):
        raise ComposeError("rename targets must be unique")

    rebuilt: Dict[str, Any] = {}
    for name, svc in services.items():
        rebuilt[renames.get(name, name)] = svc
    for svc in rebuilt.values():
        if not isinstance(svc, dict):
            continue
        deps = svc.get("depends_on")
        if isinstance(deps, list):
            svc["depends_on"] = [renames.get(d, d) for d in deps]
        elif isinstance(deps, dict):
            svc["depends_on"] = {renames.get(d, d): v for d, v in deps.items()}
        mode = svc.get("network_mode")
        if isinstance(mode, str) and mode.startswith("service:"):
            target = mode[len("service:"):]
            if target in renames:
                svc["network_mode"] = f"service:{renames[target]}"
    doc["services"] = rebuilt


def _add_services(doc: Dict[str, Any], additions: Any) -> None:
    if not isinstance(additions, dict):
        raise ComposeError("add_services must be a mapping")
    services = _services(doc)
    for name, spec in additions.items():
        _check_name(name, "service")
        if name in services:
            raise ComposeError(f"service '{name}' already exists")
        if spec is None:
            spec = {}
        if not isinstance(spec, dict):
            raise ComposeError(f"service '{name}' must be a mapping")
        if not spec.get("image") and not spec.get("build"):
            raise ComposeError(f"service '{name}' needs an image or a build section")
        service: Dict[str, Any] = {}
        known = {k: v for k, v in spec.items() if k in SERVICE_FIELDS}
        # passthrough keys (build, depends_on, ...) are copied verbatim
        for key, value in spec.items():
            if key not in SERVICE_FIELDS:
                service[key] = copy.deepcopy(value)
        apply_service_patch(service, known, name)
        services[name] = service


def _change_services(doc: Dict[str, Any], changes: Any) -> None:
    if not isinstance(changes, dict):
        raise ComposeError("service_changes must be a mapping")
    services = _services(doc)
    for name, patch in changes.items():
        if name not in services:
            raise ComposeError(f"service '{name}' not found")
        if not isinstance(patch, dict):
            raise ComposeError(f"changes for service '{name}' must be a mapping")
        service = services[name]
        if service is None:
            service = services[name] = {}
        apply_service_patch(service, patch, name)


def _change_resources(doc: Dict[str, Any], section: str, changes: Any) -> None:
    kind = section[:-1]
    if not isinstance(changes, dict):
        raise ComposeError(f"{kind}_changes must be a mapping")
    current = doc.get(section)
    if current is None:
        current = {}
    elif not isinstance(current, dict):
        raise ComposeError(f"'{section}' must be a mapping")
    for name, spec in changes.items():
        _check_name(name, kind)
        if spec is None:
            if section == "networks" and name == DEFAULT_NETWORK:
                raise ComposeError("cannot delete default network")
            if name not in current:
                raise ComposeError(f"{kind} '{name}' not found")
            users = referencing_services(doc, section, name)
            if users:
                raise ComposeError(f"{kind} '{name}' is still used by service(s): {', '.join(users)}")
            del current[name]
        elif isinstance(spec, dict):
            current[name] = copy.deepcopy(spec)
        else:
            raise ComposeError(f"{kind} '{name}' must be a mapping or null")
    if current:
        doc[section] = current
    else:
        doc.pop(section, None)


def _check_references(doc: Dict[str, Any], touched: List[str]) -> None:
    services = doc.get("services") or {}
    networks = doc.get("networks") or {}
    volumes = doc.get("volumes") or {}
    for name in touched:
        svc = services.get(name)
        if not isinstance(svc, dict):
            continue
        for net in service_networks(svc):
            if net != DEFAULT_NETWORK and net not in networks:
                raise ComposeError(f"service '{name}' references undefined network '{net}'")
        for vol in service_named_volumes(svc):
            if vol not in volumes:
                raise ComposeError(f"service '{name}' references undefined volume '{vol}'")


def apply_changes(doc: Dict[str, Any], changes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a new document with ``changes`` applied; raises ComposeError."""
    result = copy.deepcopy(doc)
    if not changes:
        return result
    if not isinstance(changes, dict):
        raise ComposeError("changes must be a mapping")
    unknown = set(changes) - CHANGE_KEYS
    if unknown:
        raise ComposeError(f"unsupported change(s): {', '.join(sorted(unknown))}")

    if changes.get("delete_services"):
        _delete_services(result, changes["delete_services"])
    renames = changes.get("rename_services") or {}
    if renames:
        _rename_services(result, renames)
    touched: List[str] = []
    if changes.get("add_services"):
        _add_services(result, changes["add_services"])
        touched.extend(changes["add_services"].keys())
    if changes.get("service_changes"):
        _change_services(result, changes["service_changes"])
        touched.extend(changes["service_changes"].keys())
    for section in ("networks", "volumes", "secrets", "configs"):
        section_changes = changes.get(f"{section[:-1]}_changes")
        if section_changes:
            _change_resources(result, section, section_changes)
    _check_references(result, touched)
    return result


def retag_image(image: str, tag: str) -> str:
    tag = tag.strip().lstrip(":")
    if not tag:
        raise ComposeError("new_tag must not be empty")
    return f"{image_repository(image)}:{tag}"


def apply_image_updates(doc: Dict[str, Any], updates: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Legacy per-service image swap: {service_name, new_image?, new_tag?}."""
    result = copy.deepcopy(doc)
    services = _services(result)
    for update in updates or []:
        name = update.get("service_name")
        if name not in services or not isinstance(services[name], dict):
            raise ComposeError(f"service '{name}' not found")
        service = services[name]
        new_image = (update.get("new_image") or "").strip()
        new_tag = (update.get("new_tag") or "").strip()
        if new_image:
            service["image"] = new_image
        elif new_tag:
            if not service.get("image"):
                raise ComposeError(f"service '{name}' has no image to retag")
            service["image"] = retag_image(service["image"], new_tag)
        else:
            raise ComposeError(f"update for service '{name}' needs new_image or new_tag")
    return result


# ============================================================
# AGENT-BACKED SERVICE
# ============================================================

class ComposeService:
    """Fetch, patch, preview and write back a stack's compose file."""

    def __init__(self, agents):
        self.agents = agents

    async def fetch(self, server, stack_name: str) -> str:
        body = await self.agents.request_json(server, "GET", f"/stacks/{stack_name}/compose")
        if isinstance(body, dict):
            content = body.get("content")
            if isinstance(content, str):
                return content
            # agents that answer with the parsed document
            return dump_document(body)
        if isinstance(body, str):
            return body
        raise ComposeError("agent returned no compose content")

    async def _write(self, server, stack_name: str, content: str) -> None:
        await self.agents.request_json(
            server, "PATCH", f"/stacks/{stack_name}/compose", payload={"content": content}
        )

    async def _run(self, server, stack_name: str, transform, preview: bool) -> Dict[str, Any]:
        original = parse_document(await self.fetch(server, stack_name))
        modified = transform(original)
        original_yaml = dump_document(original)
        modified_yaml = dump_document(modified)
        changed = modified_yaml != original_yaml
        if not preview and changed:
            await self._write(server, stack_name, modified_yaml)
            logger.info(f"Compose file for {stack_name} on {server.name} updated")
        return {
            "success": True,
            "preview": preview,
            "changed": changed,
            "original_yaml": original_yaml,
            "modified_yaml": modified_yaml,
        }

    async def update(self, server, stack_name: str, changes: Dict[str, Any], preview: bool) -> Dict[str, Any]:
        return await self._run(server, stack_name, lambda doc: apply_changes(doc, changes), preview)

    async def update_images(self, server, stack_name: str, updates: List[Dict[str, Any]], preview: bool) -> Dict[str, Any]:
        return await self._run(server, stack_name, lambda doc: apply_image_updates(doc, updates), preview)
