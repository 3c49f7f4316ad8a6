"""
Tagged field lookup.

A field is encrypted when its free-text annotation in the data dictionary
carries the ``@ENCRYPT`` action tag. The dictionary can change between
requests, so the tagged set is recomputed for every operation.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

from .storage import FieldMetadataSource

logger = logging.getLogger(__name__)

ENCRYPT_ACTION_TAG = "@ENCRYPT"


def find_tagged_fields(annotations: Iterable[Tuple[str, str]]) -> List[str]:
    """Field names whose annotation contains the action tag, in dictionary order."""
    tag = ENCRYPT_ACTION_TAG.lower()
    return [name for name, annotation in annotations if tag in (annotation or "").lower()]


class TaggedFieldResolver:
    """Resolve a project's tagged fields from its data dictionary. No caching."""

    def __init__(self, metadata: FieldMetadataSource) -> None:
        self._metadata = metadata

    async def tagged_fields(self, project_id: int) -> List[str]:
        annotations = await self._metadata.get_field_annotations(project_id)
        if not annotations:
            logger.warning("Data dictionary is empty for project %s", project_id)
            return []

        fields = find_tagged_fields(annotations)
        logger.debug("Project %s tagged fields: %s", project_id, fields)
        return fields
