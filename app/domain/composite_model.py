# app/domain/composite_model.py
from typing import Protocol

from app.domain.models import ImageBuffer, ModelResponse, ModelSubmission


class CompositeModel(Protocol):
    """The generative-image collaborator the compositor talks to.

    ``describe_locations`` is an optional enrichment step; the compositor
    tolerates it failing. ``generate`` must return a ``ModelResponse`` whose
    ``image`` is ``None`` when the model produced nothing usable.
    """

    async def describe_locations(self, marked_scene: ImageBuffer, marker_count: int) -> str: ...

    async def generate(self, submission: ModelSubmission) -> ModelResponse: ...
