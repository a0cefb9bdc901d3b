"""
Resolve declared services into build units.
"""

from typing import List

from controller.src.errors import ConfigurationError
from controller.src.models.artifact import ServiceImageSpec
from controller.src.models.pipeline import Trigger

def candidate_tag(revision: str) -> str:
    return f"candidate-{revision[:12]}"

def resolve_services(
    trigger: Trigger,
    registry_host: str,
    image_namespace: str,
    default_stable_tag: str,
) -> List[ServiceImageSpec]:
    """Turn the trigger's services into ServiceImageSpecs (one per service)."""
    if not trigger.services:
        raise ConfigurationError("Trigger declares no services to build")

    seen = set()
    specs = []
    stable_tag = trigger.stable_tag or default_stable_tag
    if stable_tag.startswith("candidate-"):
        raise ConfigurationError(f"Stable tag '{stable_tag}' collides with candidate tags")

    for service in trigger.services:
        if service.name in seen:
            raise ConfigurationError(f"Service '{service.name}' declared more than once")
        seen.add(service.name)

        repository = "/".join(p for p in (registry_host, image_namespace, service.name) if p)
        specs.append(ServiceImageSpec(
            name=service.name,
            context=service.context,
            dockerfile=service.dockerfile,
            repository=repository,
            candidate_tag=candidate_tag(trigger.revision),
            stable_tag=stable_tag,
        ))

    return specs
