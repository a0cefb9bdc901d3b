"""
PushStage - publish gated images under their stable tag.
"""

import logging
from typing import Dict, List, Tuple, Union

from controller.src.collaborators import ImageRegistry
from controller.src.errors import ConfigurationError, ReleaseError, SecurityGateFailure
from controller.src.models.artifact import GateDecision, ImageTag, ServiceImage
from controller.src.retry import RetryPolicy, RetryResult
from controller.src.stages.fanout import fan_out

logger = logging.getLogger(__name__)

class PushStage:
    def __init__(self, registry: ImageRegistry, retry_policy: RetryPolicy):
        self.registry = registry
        self.retry_policy = retry_policy

    async def push(self, image: ServiceImage, decision: GateDecision) -> RetryResult[ImageTag]:
        """Promote one image. A failed gate decision never reaches the registry."""
        if not decision.passed:
            raise SecurityGateFailure(image.reference, decision.blocking_count, decision.threshold.value)
        if decision.image != image.reference:
            raise ReleaseError(f"Gate decision for {decision.image} does not match {image.reference}")

        result = await self.retry_policy.run(
            f"push {image.name}:{image.stable_tag}",
            self.registry.promote,
            image,
            image.stable_tag,
        )
        logger.info(f"Published {result.value.reference} ({result.value.digest})")
        return result

    async def push_all(
        self,
        approved: List[Tuple[ServiceImage, GateDecision]],
    ) -> Dict[str, Union[RetryResult[ImageTag], ReleaseError]]:
        """Push approved images in parallel. ConfigurationError (auth) propagates."""

        async def _one(image: ServiceImage, decision: GateDecision):
            try:
                return await self.push(image, decision)
            except ConfigurationError:
                raise
            except ReleaseError as e:
                logger.error(f"Push failed for {image.name}: {e}")
                return e

        results = await fan_out(_one(image, decision) for image, decision in approved)
        return {image.name: result for (image, _), result in zip(approved, results)}
