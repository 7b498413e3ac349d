from typing import Optional

from loguru import logger

from vapview.exceptions import ClusterApiError, ParamsResolutionError
from vapview.models import ParamKindReference, ParamsDocument, ParamsState


class ParamsResolver:
    """Fetches the parameter object a policy's ``spec.paramKind`` refers to."""

    def __init__(self, cluster):
        self.cluster = cluster

    async def resolve(self, reference: Optional[ParamKindReference]) -> ParamsDocument:
        """
        Resolve a parameter-kind reference to a params document.

        A policy without a reference needs no params: the result is ``absent``
        and the cluster is not contacted. Any failure yields ``fetch-failed``
        with the reason; empty params are never substituted.
        """
        if reference is None:
            return ParamsDocument(state=ParamsState.ABSENT)

        try:
            item = await self.fetch(reference)
        except ParamsResolutionError as e:
            logger.warning(f"Params resolution failed for {reference.kind}: {e}")
            return ParamsDocument(state=ParamsState.FETCH_FAILED, reference=reference, reason=str(e))

        logger.info(
            f"Resolved params {item.get('metadata', {}).get('name', 'Unknown')} "
            f"for {reference.api_version}/{reference.kind}"
        )
        return ParamsDocument(state=ParamsState.RESOLVED, reference=reference, item=item)

    async def fetch(self, reference: ParamKindReference) -> dict:
        """Read the first object of the referenced collection."""
        if not reference.api_version or not reference.kind:
            raise ParamsResolutionError("paramKind requires both apiVersion and kind")

        try:
            item = await self.cluster.get_first_item(reference.group, reference.version, reference.plural)
        except ClusterApiError as e:
            raise ParamsResolutionError(
                f"Unable to list {reference.plural} in {reference.api_version}: {e}"
            ) from e

        if item is None:
            raise ParamsResolutionError(f"No {reference.kind} objects found in {reference.api_version}")
        return item
