# orchestrate/services/image_service.py
import logging
from typing import List, Optional

from orchestrate.database import models
from orchestrate.providers.interface import IComputeProvider, InstanceSpec
from orchestrate.repositories.interfaces import IImageRepository
from orchestrate.services.exceptions import (
    ConflictError,
    InvalidStateError,
    OperationTimeoutError,
    OrchestrateError,
    StepFailedError,
    ValidationError,
)
from orchestrate.services.provisioning_steps import OSType, ProvisioningStep, parse_steps
from orchestrate.services.requests import ImageRequest
from orchestrate.utils.key_lock import KeyedLock

logger = logging.getLogger(__name__)


def builder_instance_name(image_name: str) -> str:
    return f"{image_name}-builder"


class ImageService:
    """
    Builds images by running the provisioning pipeline on a transient instance.
    """

    def __init__(self, image_repo: IImageRepository, provider: IComputeProvider,
                 operation_timeout: float = 600.0, step_timeout: float = 1800.0,
                 locks: Optional[KeyedLock] = None):
        """
        Args:
            image_repo: Repository of image records.
            provider: Compute provider the builder instance and image live on.
            operation_timeout: Seconds allowed for each provider operation.
            step_timeout: Seconds allowed for each provisioning step.
        """
        self.image_repo = image_repo
        self.provider = provider
        self.operation_timeout = operation_timeout
        self.step_timeout = step_timeout
        self.locks = locks or KeyedLock()

    def validate_image_request(self, request: ImageRequest) -> List[ProvisioningStep]:
        """
        Checks a create request before any instance is booted.

        Returns:
            The parsed provisioning steps, in request order.

        Raises:
            ValidationError: os_type is UNKNOWN.
            UnknownStepError: A step is not in the catalogue.
            ConflictError: An image with this name exists or is being built.
        """
        if request.os_type is OSType.UNKNOWN:
            raise ValidationError(f"Image '{request.name}' needs an os_type of LINUX or WINDOWS.")
        steps = parse_steps(request.steps)
        existing = self.image_repo.find_by_name(request.project, request.name)
        if existing and existing.status != models.Image.STATUS_FAILED:
            raise ConflictError(f"Image '{request.name}' already exists in project '{request.project}'.")
        return steps

    def accept_image(self, request: ImageRequest) -> models.Image:
        """
        Validates a request and records the image as CREATING.

        The record is written before any work starts so that the build is
        visible (for instance to project deregistration) from acceptance on.
        """
        with self.locks.hold((request.project, "image", request.name)):
            self.validate_image_request(request)
            return self._record(request)

    def create_image(self, request: ImageRequest) -> str:
        """Accepts and builds an image in one call."""
        self.accept_image(request)
        return self.build_image(request)

    def build_image(self, request: ImageRequest) -> str:
        """
        Runs the provisioning pipeline for an accepted image and captures the result.

        1. boot `<name>-builder` from image_project/image_family
        2. apply each step in order, handing it only the metadata it consumes
        3. stop the builder and capture its boot disk as image `name`
        4. delete the builder, whatever happened before

        A failed step stops the pipeline; nothing is retried.

        Returns:
            A human readable summary of the outcome.

        Raises:
            StepFailedError: Naming the step that failed.
            ProviderError: Booting or capturing failed.
        """
        with self.locks.hold((request.project, "image", request.name)):
            steps = parse_steps(request.steps)
            record = self.image_repo.find_by_name(request.project, request.name)
            if record is None or record.status != models.Image.STATUS_CREATING:
                raise InvalidStateError(f"Image '{request.name}' has not been accepted for building.")
            try:
                leftovers = self._run_pipeline(request, steps)
            except Exception:
                record.status = models.Image.STATUS_FAILED
                self.image_repo.save(record)
                raise
            record.status = models.Image.STATUS_READY
            self.image_repo.save(record)

        summary = f"Image '{request.name}' created from {len(steps)} step(s)."
        if leftovers:
            summary += f" Could not remove: {', '.join(leftovers)}."
        return summary

    def _record(self, request: ImageRequest) -> models.Image:
        record = self.image_repo.find_by_name(request.project, request.name)
        if record is None:
            record = models.Image(project=request.project, name=request.name)
        record.zone = request.zone
        record.image_family = request.image_family
        record.image_project = request.image_project
        record.steps = list(request.steps)
        record.image_metadata = dict(request.metadata)
        record.disk_size = request.disk_size
        record.network = request.network
        record.os_type = request.os_type.value
        record.api_project = request.api_project
        record.status = models.Image.STATUS_CREATING
        if record.id is None:
            return self.image_repo.create(record)
        return self.image_repo.save(record)

    def _run_pipeline(self, request: ImageRequest, steps: List[ProvisioningStep]) -> List[str]:
        """Returns the resources that could not be cleaned up afterwards."""
        builder = builder_instance_name(request.name)
        try:
            self._provision(request, steps, builder)
        except Exception as e:
            leftovers = self._teardown(request, builder)
            if isinstance(e, OrchestrateError):
                e.add_leftovers(leftovers)
            raise
        return self._teardown(request, builder)

    def _provision(self, request: ImageRequest, steps: List[ProvisioningStep], builder: str) -> None:
        source_image = self.provider.get_image_from_family(request.image_project, request.image_family)
        logger.info("Booting builder %s from %s for image %s", builder, source_image, request.name)
        self.provider.create_instance(
            InstanceSpec(
                project=request.project,
                zone=request.zone,
                name=builder,
                source_image=source_image,
                disk_size=request.disk_size,
                network=request.network,
                metadata={},
                external_ip=True,
                os_type=request.os_type,
            ),
            self.operation_timeout,
        )

        for index, step in enumerate(steps, start=1):
            logger.info("Image %s: step %d/%d (%s)", request.name, index, len(steps), step.step_name)
            try:
                self.provider.apply_step(
                    request.project, request.zone, builder, step,
                    step.select_metadata(request.metadata), request.os_type, self.step_timeout,
                )
            except OrchestrateError as e:
                raise StepFailedError(step.step_name, str(e)) from e

        self.provider.stop_instance(request.project, request.zone, builder, self.operation_timeout)
        description = f"Provisioned by orchestrate with steps: {', '.join(request.steps) or 'none'}"
        if request.api_project:
            description += f" (requested through {request.api_project})"
        try:
            self.provider.create_image(request.project, request.zone, request.name, builder,
                                       self.operation_timeout, description)
        except OperationTimeoutError as e:
            # The capture may still finish on the provider side.
            raise e.add_leftovers(self._discard_image(request))

    def _discard_image(self, request: ImageRequest) -> List[str]:
        try:
            self.provider.delete_image(request.project, request.name, self.operation_timeout)
        except OrchestrateError as e:
            logger.error("Could not delete partly captured image %s: %s", request.name, e)
            return [request.name]
        return []

    def _teardown(self, request: ImageRequest, builder: str) -> List[str]:
        try:
            self.provider.delete_instance(request.project, request.zone, builder, self.operation_timeout)
        except OrchestrateError as e:
            logger.error("Could not delete builder instance %s: %s", builder, e)
            return [builder]
        return []
