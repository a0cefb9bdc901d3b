"""
ScanStage - one scanner invocation per built image, in parallel, with retry.
"""

import logging
from typing import Dict, List, Union

from controller.src.collaborators import VulnerabilityScanner
from controller.src.errors import ConfigurationError, ReleaseError, ScanError
from controller.src.models.artifact import ScanReport, ServiceImage
from controller.src.retry import RetryPolicy, RetryResult
from controller.src.stages.fanout import fan_out

logger = logging.getLogger(__name__)

class ScanStage:
    def __init__(self, scanner: VulnerabilityScanner, retry_policy: RetryPolicy):
        self.scanner = scanner
        self.retry_policy = retry_policy

    async def scan(self, image: ServiceImage) -> RetryResult[ScanReport]:
        """Scan one image. Raises RetryExhaustedError once the retry budget is spent."""
        result = await self.retry_policy.run(f"scan {image.reference}", self._invoke, image)
        report = result.value
        logger.info(f"Scanned {image.reference}: {len(report.findings)} finding(s)")
        return result

    async def _invoke(self, image: ServiceImage) -> ScanReport:
        try:
            return await self.scanner.scan(image)
        except ReleaseError:
            raise
        except Exception as e:
            # Unclassified scanner failures are treated as transient
            raise ScanError(f"Scanner failed for {image.reference}: {e}") from e

    async def scan_all(
        self,
        images: List[ServiceImage],
    ) -> Dict[str, Union[RetryResult[ScanReport], ReleaseError]]:

        async def _one(image: ServiceImage):
            try:
                return await self.scan(image)
            except ConfigurationError:
                raise
            except ReleaseError as e:
                logger.error(f"Scan failed for {image.name}: {e}")
                return e

        results = await fan_out(_one(image) for image in images)
        return {image.name: result for image, result in zip(images, results)}
