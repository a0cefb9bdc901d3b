from controller.src.services.executor import (
    PipelineController,
    create_controller,
    execute_pipeline,
    trigger_from_job,
)
from controller.src.services.builder import KanikoBuilder
from controller.src.services.scanner import TrivyScanner, parse_trivy_output
from controller.src.services.registry import RegistryClient
from controller.src.services.log_collector import collect_logs, termination_message
from controller.src.services.status_reporter import (
    LoggingOutcomeSink,
    DatabaseOutcomeSink,
    mark_run_failed,
)

__all__ = [
    "PipelineController",
    "create_controller",
    "execute_pipeline",
    "trigger_from_job",
    "KanikoBuilder",
    "TrivyScanner",
    "parse_trivy_output",
    "RegistryClient",
    "collect_logs",
    "termination_message",
    "LoggingOutcomeSink",
    "DatabaseOutcomeSink",
    "mark_run_failed",
]
