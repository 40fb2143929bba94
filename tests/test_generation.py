import os
import tempfile

import numpy as np
import pytest
from PIL import Image

from qr_matrix_art.api_client import (
    BACKEND_ENV_VAR,
    BaseAPIClient,
    GenerationRequest,
    LocalClient,
    call_with_timeout,
    get_client,
)
from qr_matrix_art.art import render_control_image
from qr_matrix_art.errors import GenerationServiceError, VerificationFailed
from qr_matrix_art.generation import (
    EMPHASIS_PHRASES,
    AttemptResult,
    MatrixVerifier,
    OutcomeStatus,
    RetryPolicy,
    StrategyAdjustment,
    build_prompt,
    run_generation,
)
from qr_matrix_art.image_utils import RasterImage
from qr_matrix_art.qr_generator import render_matrix_image
from qr_matrix_art.settings import ArtStyle


@pytest.fixture
def control_path(qr_matrix, image_file):
    return image_file(render_control_image(qr_matrix, 290, blur_radius=1), "control.png")


@pytest.fixture
def request_for(control_path):
    def _make(**overrides):
        params = {"prompt": "test scene", "control_image_path": control_path, "size": 290, "seed": 3}
        params.update(overrides)
        return GenerationRequest(**params)

    return _make


class ScriptedClient(BaseAPIClient):
    """Returns pre-rendered images (or raises) in order."""

    def __init__(self, script):
        super().__init__()
        self.script = list(script)
        self.requests = []

    def name(self):
        return "scripted"

    def generate(self, request):
        self.requests.append(request)
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return step


def no_sleep(_seconds):
    pass


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

def test_build_prompt_uses_style(qr_matrix):
    prompt = build_prompt(ArtStyle.CITY_NIGHT, qr_matrix)
    assert prompt.startswith("A modern city skyline at night")
    assert "high quality" in prompt


def test_build_prompt_custom_and_emphasis(qr_matrix):
    plain = build_prompt("abstract", qr_matrix, custom="a lighthouse")
    assert plain.startswith("a lighthouse")
    emphasized = build_prompt("abstract", qr_matrix, custom="a lighthouse", emphasis=2)
    assert EMPHASIS_PHRASES[0] in emphasized and EMPHASIS_PHRASES[1] in emphasized
    assert EMPHASIS_PHRASES[0] not in plain
    assert build_prompt("abstract", qr_matrix, emphasis=99).count(".") >= len(EMPHASIS_PHRASES)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

def test_verifier_accepts_clean_render(qr_matrix, qr_raster):
    verifier = MatrixVerifier(qr_matrix)
    assert verifier.verify(qr_raster) == 0.0


def test_verifier_scales_to_image_size(qr_matrix):
    big = RasterImage.from_pil(render_matrix_image(qr_matrix, 8).resize((1024, 1024), Image.NEAREST))
    assert MatrixVerifier(qr_matrix).measure(big) == 0.0


def test_verifier_rejects_wrong_matrix(qr_matrix, qr_raster):
    with pytest.raises(VerificationFailed) as info:
        MatrixVerifier(qr_matrix.inverted(), max_error_rate=0.1).verify(qr_raster)
    assert info.value.error_rate == pytest.approx(1.0)


def test_verifier_with_quiet_zone(qr_matrix):
    raster = RasterImage.from_pil(render_matrix_image(qr_matrix, 8, border=4))
    assert MatrixVerifier(qr_matrix, border=4).measure(raster) == 0.0


# ---------------------------------------------------------------------------
# Retry state machine
# ---------------------------------------------------------------------------

def test_strategy_escalation():
    policy = RetryPolicy()
    adj = StrategyAdjustment().escalate(policy).escalate(policy)
    assert adj.controlnet_scale_step == pytest.approx(0.3)
    assert adj.strength_step == pytest.approx(-0.1)
    assert adj.contrast_emphasis == pytest.approx(0.4)
    assert adj.prompt_emphasis == 2


def test_retry_policy_validation():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    assert RetryPolicy(backoff_base=1.0).delay(3) == 4.0


def test_success_on_first_attempt(qr_matrix, image_file, request_for):
    good = image_file(render_matrix_image(qr_matrix, 10), "good.png")
    client = ScriptedClient([good])
    outcome = run_generation(client, request_for(), MatrixVerifier(qr_matrix), RetryPolicy(sleep=no_sleep))
    assert outcome.status == OutcomeStatus.SUCCESS and outcome.succeeded
    assert len(outcome.attempts) == 1
    assert outcome.attempts[0].result == AttemptResult.VERIFIED


def test_retries_adjust_request(qr_matrix, image_file, request_for):
    good = image_file(render_matrix_image(qr_matrix, 10), "good.png")
    bad = image_file(render_matrix_image(qr_matrix.inverted(), 10), "bad.png")
    client = ScriptedClient([GenerationServiceError("boom", backend="scripted"), bad, good])
    prompts = []

    def builder(emphasis):
        prompts.append(emphasis)
        return f"scene {emphasis}"

    outcome = run_generation(
        client, request_for(controlnet_scale=1.0, strength=0.9), MatrixVerifier(qr_matrix),
        RetryPolicy(sleep=no_sleep), prompt_builder=builder,
    )
    assert outcome.succeeded
    assert [a.result for a in outcome.attempts] == [
        AttemptResult.SERVICE_ERROR, AttemptResult.VERIFICATION_FAILED, AttemptResult.VERIFIED,
    ]
    scales = [r.controlnet_scale for r in client.requests]
    strengths = [r.strength for r in client.requests]
    assert scales == sorted(scales) and scales[0] < scales[-1]
    assert strengths == sorted(strengths, reverse=True)
    assert prompts == [0, 1, 2]
    assert client.requests[2].prompt == "scene 2"


def test_cap_returns_best_as_degraded(qr_matrix, image_file, request_for):
    bad = image_file(render_matrix_image(qr_matrix.inverted(), 10), "bad.png")
    client = ScriptedClient([bad] * 10)
    outcome = run_generation(client, request_for(), MatrixVerifier(qr_matrix), RetryPolicy(max_attempts=3, sleep=no_sleep))
    assert outcome.status == OutcomeStatus.DEGRADED
    assert len(client.requests) == 3
    assert len(outcome.attempts) == 3
    assert outcome.image is not None


def test_never_exceeds_cap_and_raises_without_image(request_for, qr_matrix):
    client = ScriptedClient([GenerationServiceError("down", backend="scripted")] * 10)
    sleeps = []
    with pytest.raises(GenerationServiceError):
        run_generation(
            client, request_for(), MatrixVerifier(qr_matrix),
            RetryPolicy(max_attempts=5, backoff_base=0.5, sleep=sleeps.append),
        )
    assert len(client.requests) == 5
    assert sleeps == [0.5, 1.0, 2.0, 4.0]


def test_unreadable_result_counts_as_service_error(request_for, qr_matrix, tmp_path):
    junk = tmp_path / "junk.png"
    junk.write_bytes(b"not an image")
    client = ScriptedClient([str(junk)])
    with pytest.raises(GenerationServiceError):
        run_generation(client, request_for(), MatrixVerifier(qr_matrix), RetryPolicy(max_attempts=1, sleep=no_sleep))
    assert not junk.exists()


@pytest.fixture
def scratch_dir(tmp_path, monkeypatch):
    """Redirect the temp directory so leftover files can be counted."""
    scratch = tmp_path / "scratch"
    scratch.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(scratch))
    return scratch


def test_failed_attempts_keep_only_the_best_file(qr_matrix, request_for, scratch_dir):
    outcome = run_generation(
        LocalClient(), request_for(), MatrixVerifier(qr_matrix.inverted()),
        RetryPolicy(max_attempts=3, sleep=no_sleep),
    )
    assert outcome.status == OutcomeStatus.DEGRADED
    assert [len(a.paths) for a in outcome.attempts] == [1, 2, 2]
    assert os.listdir(scratch_dir) == [os.path.basename(outcome.image_path)]


def test_success_keeps_only_the_chosen_file(qr_matrix, image_file, request_for, scratch_dir):
    good = image_file(render_matrix_image(qr_matrix, 10), "good.png")
    bad = image_file(render_matrix_image(qr_matrix.inverted(), 10), "bad.png")
    client = ScriptedClient([bad, good])
    outcome = run_generation(client, request_for(), MatrixVerifier(qr_matrix), RetryPolicy(sleep=no_sleep))
    assert outcome.succeeded
    assert not os.path.exists(bad)
    # The second attempt is contrast-boosted into a new file
    assert os.listdir(scratch_dir) == [os.path.basename(outcome.image_path)]


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

def test_local_backend_is_deterministic(request_for, tmp_path):
    client = LocalClient(output_dir=str(tmp_path))
    a = np.asarray(Image.open(client.generate(request_for(seed=42))))
    b = np.asarray(Image.open(client.generate(request_for(seed=42))))
    c = np.asarray(Image.open(client.generate(request_for(seed=43))))
    assert a.shape == (290, 290, 3)
    assert (a == b).all()
    assert not (a == c).all()


def test_local_backend_passes_verification(qr_matrix, request_for, tmp_path):
    client = LocalClient(output_dir=str(tmp_path))
    outcome = run_generation(client, request_for(), MatrixVerifier(qr_matrix), RetryPolicy(sleep=no_sleep))
    assert outcome.succeeded
    assert os.path.isfile(outcome.image_path)


def test_get_client_from_environment(monkeypatch):
    monkeypatch.setenv(BACKEND_ENV_VAR, "local")
    assert isinstance(get_client(), LocalClient)
    with pytest.raises(ValueError):
        get_client("dall-e")


def test_call_with_timeout_wraps_errors():
    def fail():
        raise RuntimeError("space exploded")

    with pytest.raises(GenerationServiceError) as info:
        call_with_timeout(fail, "test")
    assert info.value.backend == "test"
    assert call_with_timeout(lambda: 7, "test") == 7


def test_call_with_timeout_times_out():
    import threading

    gate = threading.Event()
    with pytest.raises(GenerationServiceError, match="timed out"):
        call_with_timeout(gate.wait, "slow", timeout=0.05)
    gate.set()


def test_request_validation(control_path):
    with pytest.raises(ValueError):
        GenerationRequest(prompt=" ", control_image_path=control_path)
    with pytest.raises(ValueError):
        GenerationRequest(prompt="x", control_image_path=control_path, control_guidance_start=0.8, control_guidance_end=0.2)
