# orchestrate/app.py
import json
import logging
import re
import sys
from wsgiref.simple_server import make_server

from orchestrate.config import Settings
from orchestrate.database.database import make_engine, make_session_factory
from orchestrate.database.db_init import initialize_db
from orchestrate.logging_config import setup_logging
from orchestrate.providers import create_provider
from orchestrate.repositories.sqlalchemy.sqlalchemy_image_repository import SqlalchemyImageRepository
from orchestrate.repositories.sqlalchemy.sqlalchemy_operation_repository import SqlalchemyOperationRepository
from orchestrate.repositories.sqlalchemy.sqlalchemy_project_repository import SqlalchemyProjectRepository
from orchestrate.repositories.sqlalchemy.sqlalchemy_template_repository import SqlalchemyTemplateRepository
from orchestrate.services.compute_service import ComputeService
from orchestrate.services.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    OrchestrateError,
    ProviderError,
    ValidationError,
)
from orchestrate.services.image_service import ImageService
from orchestrate.services.operation_tracker import OperationTracker
from orchestrate.services.orchestrate_service import OrchestrateService
from orchestrate.services.project_service import ProjectService
from orchestrate.services.template_service import TemplateService
from orchestrate.utils.key_lock import KeyedLock

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
## Request helpers
# --------------------------------------------------------------------------

def get_request_data(environ):
    try:
        content_length = int(environ.get("CONTENT_LENGTH") or 0)
        return json.loads(environ["wsgi.input"].read(content_length)) if content_length > 0 else {}
    except (ValueError, json.JSONDecodeError):
        raise ValidationError("Invalid or missing JSON body.")


# Checked in order, so subclasses come before their bases.
ERROR_STATUS = [
    (ConflictError, "409 Conflict"),
    (ValidationError, "400 Bad Request"),
    (NotFoundError, "404 Not Found"),
    (InvalidStateError, "409 Conflict"),
    (ProviderError, "502 Bad Gateway"),
    (OrchestrateError, "500 Internal Server Error"),
]


def handle_exception(e):
    for error_type, status in ERROR_STATUS:
        if isinstance(e, error_type):
            return status, json.dumps({"error": str(e), "kind": e.kind})
    logger.exception("Unhandled error while serving request")
    return "500 Internal Server Error", json.dumps({"error": str(e), "kind": "InternalError"})


# --------------------------------------------------------------------------
## Handlers
# --------------------------------------------------------------------------

def create_image_handler(service, environ):
    data = get_request_data(environ)
    return "202 Accepted", service.create_image(data.get("image") or {})


def create_template_handler(service, environ):
    data = get_request_data(environ)
    return "202 Accepted", service.create_template(data.get("template") or {})


def delete_template_handler(service, environ, project, name):
    data = get_request_data(environ)
    return "202 Accepted", service.delete_template(project, name, data.get("zone"))


def add_size_handler(service, environ, project, template):
    data = get_request_data(environ)
    return "202 Accepted", service.add_size(project, data.get("zone"), template, data.get("size") or {})


def delete_size_handler(service, environ, project, template, size):
    data = get_request_data(environ)
    return "202 Accepted", service.delete_size(project, data.get("zone"), template, size)


def set_default_size_handler(service, environ, project, template):
    data = get_request_data(environ)
    return "202 Accepted", service.set_default_size(project, data.get("zone"), template, data.get("size"))


def create_instance_handler(service, environ):
    data = get_request_data(environ)
    return "202 Accepted", service.create_instance(data.get("instance") or {})


def register_project_handler(service, environ, project):
    return "202 Accepted", service.register_project(project)


def deregister_project_handler(service, environ, project):
    return "202 Accepted", service.deregister_project(project)


def get_operation_handler(service, environ, request_id):
    return "200 OK", service.get_operation(request_id)


NAME = r"([a-z0-9][a-z0-9_-]*)"

ROUTES = [
    ("POST", r"^/v1/images$", create_image_handler),
    ("POST", r"^/v1/templates$", create_template_handler),
    ("DELETE", rf"^/v1/projects/{NAME}/templates/{NAME}$", delete_template_handler),
    ("POST", rf"^/v1/projects/{NAME}/templates/{NAME}/sizes$", add_size_handler),
    ("DELETE", rf"^/v1/projects/{NAME}/templates/{NAME}/sizes/{NAME}$", delete_size_handler),
    ("PUT", rf"^/v1/projects/{NAME}/templates/{NAME}/default-size$", set_default_size_handler),
    ("POST", r"^/v1/instances$", create_instance_handler),
    ("POST", rf"^/v1/projects/{NAME}:register$", register_project_handler),
    ("POST", rf"^/v1/projects/{NAME}:deregister$", deregister_project_handler),
    ("GET", r"^/v1/operations/([0-9a-f]+)$", get_operation_handler),
]


# --------------------------------------------------------------------------
## WSGI application
# --------------------------------------------------------------------------

def make_application(service: OrchestrateService, release_session=None):
    """
    Wraps the service in a WSGI callable speaking the JSON transcoding of the RPCs.

    Args:
        service: The façade every route delegates to.
        release_session: Called after each request, typically scoped_session.remove.
    """
    def application(environ, start_response):
        try:
            path = environ.get("PATH_INFO", "")
            method = environ.get("REQUEST_METHOD", "")

            handler, path_args = None, []
            for route_method, pattern, route_handler in ROUTES:
                if method == route_method and (match := re.match(pattern, path)):
                    handler, path_args = route_handler, match.groups()
                    break

            if handler:
                status, payload = handler(service, environ, *path_args)
                response_body = json.dumps(payload)
            else:
                status, response_body = "404 Not Found", json.dumps({"error": "Not Found"})
        except Exception as e:
            status, response_body = handle_exception(e)
        finally:
            if release_session is not None:
                release_session()

        start_response(status, [("Content-Type", "application/json")])
        return [response_body.encode("utf-8")]

    return application


def build_service(settings: Settings):
    """
    Wires repositories, provider and services together.

    Returns:
        (service, session_factory)
    """
    engine = make_engine(settings.database_url)
    initialize_db(engine)
    session_factory = make_session_factory(engine)

    template_repo = SqlalchemyTemplateRepository(session_factory)
    image_repo = SqlalchemyImageRepository(session_factory)
    project_repo = SqlalchemyProjectRepository(session_factory)
    operation_repo = SqlalchemyOperationRepository(session_factory)

    provider = create_provider(settings)
    locks = KeyedLock()
    template_service = TemplateService(template_repo, provider, settings.operation_timeout, locks)
    image_service = ImageService(image_repo, provider, settings.operation_timeout, settings.step_timeout, locks)
    compute_service = ComputeService(template_service, provider, settings.operation_timeout, settings.default_user)
    project_service = ProjectService(project_repo, template_repo, image_repo, provider)

    service = OrchestrateService(
        project_service,
        template_service,
        image_service,
        compute_service,
        OperationTracker(operation_repo),
        max_workers=settings.max_workers,
        release_session=session_factory.remove,
        locks=locks,
    )
    return service, session_factory


# --------------------------------------------------------------------------
## Server
# --------------------------------------------------------------------------

def main():
    settings = Settings.from_env()
    setup_logging(settings.log_level)
    try:
        service, session_factory = build_service(settings)
    except Exception:
        logger.exception("Error starting orchestrate")
        return 1

    application = make_application(service, session_factory.remove)
    try:
        with make_server("", settings.port, application) as httpd:
            logger.info("Serving orchestrate on port %d with the %s provider", settings.port, settings.provider)
            httpd.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down")
    finally:
        service.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
