from api.src.services.github import (
    verify_signature,
    clone_repository,
    fetch_pipeline_config,
    fetch_resource_set,
    parse_webhook_payload,
    cleanup_repo,
    RepositoryError,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_config,
    parse_pipeline_dict,
    validate_resource_set,
    PipelineConfigError,
)
from api.src.services.queue import (
    enqueue_pipeline_run,
    request_abort,
    get_run_status,
    get_queue_length,
)

__all__ = [
    "verify_signature",
    "clone_repository",
    "fetch_pipeline_config",
    "fetch_resource_set",
    "parse_webhook_payload",
    "cleanup_repo",
    "RepositoryError",
    "parse_pipeline_config",
    "parse_pipeline_dict",
    "validate_resource_set",
    "PipelineConfigError",
    "enqueue_pipeline_run",
    "request_abort",
    "get_run_status",
    "get_queue_length",
]
