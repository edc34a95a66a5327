# orchestrate/services/provisioning_steps.py
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Tuple

from orchestrate.services.exceptions import UnknownStepError


class OSType(Enum):
    UNKNOWN = "UNKNOWN"
    LINUX = "LINUX"
    WINDOWS = "WINDOWS"

    @classmethod
    def parse(cls, value) -> "OSType":
        """Accepts enum names ('LINUX') and proto numbers (1)."""
        if isinstance(value, OSType):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            return list(cls)[value] if 0 <= value < len(cls) else cls.UNKNOWN
        try:
            return cls[str(value or "UNKNOWN").upper()]
        except KeyError:
            return cls.UNKNOWN


class ProvisioningStep(Enum):
    """
    The closed catalogue of provisioning steps an image can be built from.

    Each step names the request metadata keys it consumes; only those keys
    are handed to the guest while the step runs.
    """
    TOOLS = ("tools", ())
    TERADICI = ("teradici", ("teradici_registration_code",))
    MAYA = ("maya", ("maya_license_server",))
    NUKE = ("nuke", ("nuke_license",))
    HOUDINI = ("houdini", ("houdini_license_server",))
    RV = ("rv", ("rv_license",))
    ZYNC = ("zync", ("zync_api_key",))

    def __init__(self, step_name: str, metadata_keys: Tuple[str, ...]):
        self.step_name = step_name
        self.metadata_keys = metadata_keys

    def script_for(self, os_type: OSType) -> str:
        extension = "ps1" if os_type is OSType.WINDOWS else "sh"
        return f"{os_type.value.lower()}/{self.step_name}.{extension}"

    def select_metadata(self, metadata: Mapping[str, str]) -> Dict[str, str]:
        return {key: metadata[key] for key in self.metadata_keys if key in metadata}

    @classmethod
    def by_name(cls, step_name: str) -> "ProvisioningStep":
        for step in cls:
            if step.step_name == step_name:
                return step
        raise UnknownStepError([step_name])


def parse_steps(step_names: Iterable[str]) -> List[ProvisioningStep]:
    """
    Maps step names to catalogue entries, preserving order.

    Raises:
        UnknownStepError: Naming every unknown step, not just the first.
    """
    names = list(step_names)
    known = {step.step_name: step for step in ProvisioningStep}
    unknown = [name for name in names if name not in known]
    if unknown:
        raise UnknownStepError(unknown)
    return [known[name] for name in names]
