# orchestrate/services/requests.py
"""
Request shapes accepted by the orchestration service.

The `from_dict` constructors take the JSON transcoding of the service's
protobuf messages (snake_case fields, metadata as a list of key/value pairs)
and reject anything malformed with ValidationError before work is accepted.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from orchestrate.services.exceptions import ValidationError
from orchestrate.services.provisioning_steps import OSType


def parse_metadata(entries: Optional[Iterable[Any]]) -> Dict[str, str]:
    """
    Turns [{'key': k, 'value': v}, ...] into an ordered dict.

    A plain mapping is accepted as well. Keys must be unique and non-empty.
    """
    if not entries:
        return {}
    if isinstance(entries, Mapping):
        entries = [{"key": key, "value": value} for key, value in entries.items()]

    metadata: Dict[str, str] = {}
    for entry in entries:
        if not isinstance(entry, Mapping) or not entry.get("key"):
            raise ValidationError(f"Malformed metadata entry: {entry!r}.")
        key = str(entry["key"])
        if key in metadata:
            raise ValidationError(f"Duplicate metadata key '{key}'.")
        metadata[key] = "" if entry.get("value") is None else str(entry["value"])
    return metadata


def _require(data: Mapping[str, Any], *names: str) -> None:
    missing = [name for name in names if not data.get(name)]
    if missing:
        raise ValidationError(f"Missing required field(s): {', '.join(missing)}.")


def _uint(data: Mapping[str, Any], name: str, default: int = 0) -> int:
    value = data.get(name)
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field '{name}' must be an integer, got {value!r}.") from None
    if number < 0:
        raise ValidationError(f"Field '{name}' must not be negative.")
    return number


def _strings(data: Mapping[str, Any], name: str) -> List[str]:
    value = data.get(name) or []
    if isinstance(value, str) or not all(isinstance(item, str) for item in value):
        raise ValidationError(f"Field '{name}' must be a list of strings.")
    return list(value)


@dataclass
class SizeRequest:
    name: str
    memory: int
    cpus: int
    gpu_type: Optional[str] = None
    gpu_count: int = 0
    disk_size: Optional[int] = None
    disk_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SizeRequest":
        _require(data, "name")
        size = cls(
            name=data["name"],
            memory=_uint(data, "memory"),
            cpus=_uint(data, "cpus"),
            gpu_type=data.get("gpu_type") or None,
            gpu_count=_uint(data, "gpu_count"),
            disk_size=_uint(data, "disk_size") or None,
            disk_type=data.get("disk_type") or None,
            metadata=parse_metadata(data.get("metadata")),
        )
        if not size.memory or not size.cpus:
            raise ValidationError(f"Size '{size.name}' needs non-zero memory and cpus.")
        if bool(size.gpu_type) != bool(size.gpu_count):
            raise ValidationError(f"Size '{size.name}' must set gpu_type and gpu_count together.")
        return size


@dataclass
class TemplateRequest:
    project: str
    zone: str
    name: str
    image_family: str
    image_project: str
    network: Optional[str] = None
    subnetwork: Optional[str] = None
    static_ip: bool = False
    scopes: List[str] = field(default_factory=list)
    instance_name_pattern: Optional[str] = None
    sizes: List[SizeRequest] = field(default_factory=list)
    default_size_name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TemplateRequest":
        _require(data, "project", "zone", "name", "image_family", "image_project")
        return cls(
            project=data["project"],
            zone=data["zone"],
            name=data["name"],
            image_family=data["image_family"],
            image_project=data["image_project"],
            network=data.get("network") or None,
            subnetwork=data.get("subnetwork") or None,
            static_ip=bool(data.get("static_ip", False)),
            scopes=_strings(data, "scopes"),
            instance_name_pattern=data.get("instance_name_pattern") or None,
            sizes=[SizeRequest.from_dict(size) for size in data.get("sizes") or []],
            default_size_name=data.get("default_size_name") or None,
            metadata=parse_metadata(data.get("metadata")),
        )


@dataclass
class ImageRequest:
    project: str
    zone: str
    name: str
    image_family: str
    image_project: str
    steps: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    disk_size: Optional[int] = None
    network: Optional[str] = None
    os_type: OSType = OSType.UNKNOWN
    api_project: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ImageRequest":
        _require(data, "project", "zone", "name", "image_family", "image_project")
        return cls(
            project=data["project"],
            zone=data["zone"],
            name=data["name"],
            image_family=data["image_family"],
            image_project=data["image_project"],
            steps=_strings(data, "steps"),
            metadata=parse_metadata(data.get("metadata")),
            disk_size=_uint(data, "disk_size") or None,
            network=data.get("network") or None,
            os_type=OSType.parse(data.get("os_type")),
            api_project=data.get("api_project") or None,
        )


@dataclass
class InstanceRequest:
    project: str
    zone: str
    template: str
    size: Optional[str] = None
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    use_latest_image: bool = False
    use_external_ip: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "InstanceRequest":
        _require(data, "project", "zone", "template")
        return cls(
            project=data["project"],
            zone=data["zone"],
            template=data["template"],
            size=data.get("size") or None,
            name=data.get("name") or None,
            metadata=parse_metadata(data.get("metadata")),
            use_latest_image=bool(data.get("use_latest_image", False)),
            use_external_ip=bool(data.get("use_external_ip", False)),
        )
