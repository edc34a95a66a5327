# orchestrate/utils/vm_xml_generator.py
from pathlib import Path
from typing import Mapping, Optional
from xml.sax.saxutils import escape, quoteattr

TEMPLATE_PATH = Path(__file__).resolve().parent.parent / "configs" / "vm_template.xml"


def get_xml_template() -> str:
    """Reads the libvirt domain template shipped with the package."""
    try:
        return TEMPLATE_PATH.read_text()
    except FileNotFoundError:
        raise FileNotFoundError(f"VM template file not found at {TEMPLATE_PATH}.")


# Read once at import time.
XML_TEMPLATE = get_xml_template()


def generate_vm_xml(vm_name, vm_uuid, cpu_count, ram_mb, image_filepath,
                    network: str = "default", metadata: Optional[Mapping[str, str]] = None):
    """
    Fills the domain template with an instance's shape.

    Instance metadata is kept under the domain's <metadata> element so the
    guest agent and later lookups can read it back from the definition.
    """
    ram_kib = ram_mb * 1024
    metadata_items = "\n".join(
        f"      <orchestrate:item key={quoteattr(key)}>{escape(str(value))}</orchestrate:item>"
        for key, value in (metadata or {}).items()
    )
    return XML_TEMPLATE.format(
        vm_name=escape(vm_name),
        vm_uuid=vm_uuid,
        cpu_count=cpu_count,
        ram_kib=ram_kib,
        image_filepath=escape(image_filepath),
        network=escape(network),
        metadata_items=metadata_items,
    )
