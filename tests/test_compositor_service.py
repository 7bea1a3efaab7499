import asyncio
import io
import threading

import pytest

from conftest import FakeModel, decode, make_image

from app.domain.compositor_service import (
    CompositeRun,
    CompositeStage,
    CompositorService,
    build_markers,
)
from app.domain.errors import (
    CompositeValidationError,
    ConfigurationError,
    DecodeError,
    ExternalBoundaryError,
    ImageProcessingError,
)
from app.domain.models import MARKER_PALETTE, Dimensions, NormalizedPosition, ProductPlacement
from app.domain.prompts import fallback_location_descriptions


def _placement(label: str, x: float = 50, y: float = 50, size=(400, 300)) -> ProductPlacement:
    return ProductPlacement(
        image=make_image(*size, color=(30, 30, 200)),
        label=label,
        position=NormalizedPosition(x_percent=x, y_percent=y),
    )


def _service(model: FakeModel, pool=None) -> CompositorService:
    return CompositorService(model=model, target_dimension=1024, quality=95, max_products=12, pool=pool)


def test_compose_returns_image_in_original_aspect_ratio(landscape_scene, pool) -> None:
    model = FakeModel()
    service = _service(model, pool)
    products = [_placement("red mug", 10, 50), _placement("plant", 80, 30, size=(300, 600))]

    result = asyncio.run(service.compose(landscape_scene, products))

    assert result.dimensions == Dimensions(width=1024, height=576)
    assert decode(result.image).shape == (576, 1024, 3)
    assert result.run_id
    assert "1. red mug" in result.prompt
    assert "2. plant" in result.prompt
    assert "**Marker 1:** on the wooden table." in result.prompt
    assert result.raw_response.startswith("cand0")

    [submission] = model.submissions
    assert submission.product_descriptions == ["red mug", "plant"]
    assert len(submission.ordered_product_images) == 2
    assert decode(submission.clean_scene_image).shape == (1024, 1024, 3)
    assert decode(submission.ordered_product_images[1]).shape == (1024, 1024, 3)
    assert submission.marked_scene_image == result.marked_scene
    assert submission.marked_scene_image != submission.clean_scene_image
    assert submission.freeform_prompt == result.prompt
    assert model.describe_calls == [2]


def test_compose_accepts_file_handles(landscape_scene, pool) -> None:
    service = _service(FakeModel(), pool)
    shared = io.BytesIO(make_image(200, 200))
    products = [
        ProductPlacement(image=shared, label="a", position=NormalizedPosition(x_percent=1, y_percent=1)),
        ProductPlacement(image=shared, label="b", position=NormalizedPosition(x_percent=99, y_percent=99)),
    ]
    result = asyncio.run(service.compose(io.BytesIO(landscape_scene), products))
    assert result.dimensions == Dimensions(width=1024, height=576)


def test_zero_products_fail_before_model_is_called(landscape_scene) -> None:
    model = FakeModel()
    with pytest.raises(CompositeValidationError) as exc:
        asyncio.run(_service(model).compose(landscape_scene, []))
    assert isinstance(exc.value, ImageProcessingError)
    assert exc.value.stage == "validation"
    assert model.submissions == []
    assert model.describe_calls == []


def test_too_many_products_are_rejected(landscape_scene) -> None:
    service = CompositorService(model=FakeModel(), max_products=2)
    with pytest.raises(CompositeValidationError):
        asyncio.run(service.compose(landscape_scene, [_placement(str(i)) for i in range(3)]))


def test_product_limit_beyond_marker_labels_is_a_configuration_error() -> None:
    with pytest.raises(ConfigurationError):
        CompositorService(model=FakeModel(), max_products=10_000)


def test_markers_are_numbered_and_cycle_through_palette() -> None:
    products = [_placement(f"p{i}") for i in range(len(MARKER_PALETTE) + 2)]
    markers = build_markers(products)
    assert [m.label for m in markers] == [str(i + 1) for i in range(len(products))]
    assert [m.color for m in markers[: len(MARKER_PALETTE)]] == list(MARKER_PALETTE)
    assert markers[len(MARKER_PALETTE)].color == MARKER_PALETTE[0]
    assert markers[len(MARKER_PALETTE) + 1].color == MARKER_PALETTE[1]
    assert markers[3].position == products[3].position


def test_enrichment_failure_falls_back_to_placeholders(landscape_scene, pool) -> None:
    model = FakeModel(describe_error=RuntimeError("quota"))
    result = asyncio.run(_service(model, pool).compose(landscape_scene, [_placement("a"), _placement("b")]))
    assert fallback_location_descriptions(2) in result.prompt
    assert "**Marker 2:** at the specified location." in result.prompt
    assert len(model.submissions) == 1


def test_empty_enrichment_text_falls_back_too(landscape_scene, pool) -> None:
    model = FakeModel(descriptions="   ")
    result = asyncio.run(_service(model, pool).compose(landscape_scene, [_placement("a")]))
    assert "**Marker 1:** at the specified location." in result.prompt


def test_missing_image_in_model_response_raises(landscape_scene, pool) -> None:
    model = FakeModel(return_image=False)
    with pytest.raises(ExternalBoundaryError) as exc:
        asyncio.run(_service(model, pool).compose(landscape_scene, [_placement("a")]))
    assert exc.value.raw_response.startswith("cand0: reason=SAFETY")
    assert exc.value.details["raw_response"] == exc.value.raw_response


def test_model_exception_is_wrapped_without_retry(landscape_scene, pool) -> None:
    model = FakeModel(generate_error=ConnectionError("reset by peer"))
    with pytest.raises(ExternalBoundaryError) as exc:
        asyncio.run(_service(model, pool).compose(landscape_scene, [_placement("a")]))
    assert isinstance(exc.value.__cause__, ConnectionError)
    assert len(model.submissions) == 1


def test_square_model_output_of_other_size_is_rescaled(landscape_scene, pool) -> None:
    model = FakeModel(result_size=(768, 768))
    result = asyncio.run(_service(model, pool).compose(landscape_scene, [_placement("a")]))
    assert result.dimensions == Dimensions(width=1024, height=576)


def test_non_square_model_output_fails_cropping(landscape_scene, pool) -> None:
    model = FakeModel(result_size=(1024, 768))
    with pytest.raises(ImageProcessingError) as exc:
        asyncio.run(_service(model, pool).compose(landscape_scene, [_placement("a")]))
    assert exc.value.stage == "crop"


def test_undecodable_scene_is_a_decode_error(pool) -> None:
    model = FakeModel()
    with pytest.raises(DecodeError):
        asyncio.run(_service(model, pool).compose(b"not an image", [_placement("a")]))
    assert model.submissions == []


def test_run_walks_the_states_in_order() -> None:
    run = CompositeRun("abc")
    for stage in (
        CompositeStage.PROBING,
        CompositeStage.RESIZING,
        CompositeStage.ANNOTATING,
        CompositeStage.AWAITING_EXTERNAL_RESULT,
        CompositeStage.CROPPING,
        CompositeStage.DONE,
    ):
        run.advance(stage)
    assert run.finished
    assert run.history[0] is CompositeStage.IDLE
    assert run.history[-1] is CompositeStage.DONE
    assert set(run.timings) == {"probing", "resizing", "annotating", "awaiting_external_result", "cropping"}


def test_illegal_transitions_are_rejected() -> None:
    run = CompositeRun()
    with pytest.raises(ImageProcessingError) as exc:
        run.advance(CompositeStage.ANNOTATING)
    assert exc.value.stage == "state"

    run.advance(CompositeStage.PROBING)
    run.advance(CompositeStage.RESIZING)
    with pytest.raises(ImageProcessingError):
        run.advance(CompositeStage.PROBING)


def test_failed_is_terminal_and_idle_cannot_fail() -> None:
    idle = CompositeRun()
    idle.fail(RuntimeError("x"))
    assert idle.stage is CompositeStage.IDLE

    run = CompositeRun()
    run.advance(CompositeStage.PROBING)
    run.fail(RuntimeError("boom"))
    assert run.stage is CompositeStage.FAILED
    assert run.finished
    with pytest.raises(ImageProcessingError):
        run.advance(CompositeStage.RESIZING)


def test_probing_never_runs_on_the_event_loop_thread(landscape_scene, pool, monkeypatch) -> None:
    from app.domain import compositor_service

    probe = compositor_service.probe_dimensions
    threads = []

    def recording_probe(source):
        threads.append(threading.current_thread())
        return probe(source)

    monkeypatch.setattr(compositor_service, "probe_dimensions", recording_probe)
    result = asyncio.run(_service(FakeModel(), pool).compose(landscape_scene, [_placement("mug")]))

    assert result.dimensions == Dimensions(width=1024, height=576)
    assert len(threads) == 3  # scene, model output, final image
    assert threading.main_thread() not in threads
