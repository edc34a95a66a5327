from orchestrate.providers.interface import IComputeProvider, InstanceSpec, InstanceTemplateSpec


def create_provider(settings) -> IComputeProvider:
    """Builds the compute provider selected by `settings.provider`."""
    if settings.provider == "gce":
        from orchestrate.providers.gce_provider import GceComputeProvider
        return GceComputeProvider.from_settings(settings)
    if settings.provider == "libvirt":
        from orchestrate.providers.libvirt_provider import LibvirtComputeProvider
        return LibvirtComputeProvider.from_settings(settings)
    raise ValueError(f"Unknown compute provider '{settings.provider}'.")


__all__ = ["IComputeProvider", "InstanceSpec", "InstanceTemplateSpec", "create_provider"]
