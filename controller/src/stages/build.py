"""
BuildStage - one builder invocation per service, in parallel.
"""

import logging
from typing import Dict, List, Optional, Union

from controller.src.collaborators import ImageBuilder
from controller.src.errors import BuildError, ConfigurationError, ReleaseError
from controller.src.models.artifact import ServiceImage, ServiceImageSpec
from controller.src.stages.fanout import fan_out

logger = logging.getLogger(__name__)

class BuildStage:
    """Build failures are deterministic for fixed inputs, so nothing is retried."""

    def __init__(self, builder: ImageBuilder):
        self.builder = builder

    async def build(self, spec: ServiceImageSpec, revision: str, repository_url: Optional[str] = None) -> ServiceImage:
        logger.info(f"Building {spec.name} from {spec.context} -> {spec.candidate_reference}")
        try:
            image = await self.builder.build(spec, revision, repository_url)
        except ConfigurationError:
            raise
        except ReleaseError as e:
            if isinstance(e, BuildError):
                raise
            raise BuildError(f"Build of {spec.name} failed: {e}") from e
        except Exception as e:
            raise BuildError(f"Build of {spec.name} failed: {e}") from e
        logger.info(f"Built {image.pinned_reference}")
        return image

    async def build_all(
        self,
        specs: List[ServiceImageSpec],
        revision: str,
        repository_url: Optional[str] = None,
    ) -> Dict[str, Union[ServiceImage, BuildError]]:
        """Build every service; per-service BuildErrors are returned, not raised."""

        async def _one(spec: ServiceImageSpec):
            try:
                return await self.build(spec, revision, repository_url)
            except BuildError as e:
                logger.error(f"Build failed for {spec.name}: {e}")
                return e

        results = await fan_out(_one(spec) for spec in specs)
        return {spec.name: result for spec, result in zip(specs, results)}
