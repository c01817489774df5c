"""
Tests for the verification service Flask application.
"""
import asyncio
import json
import threading
import time

import pytest

from conftest import encode_image, shade_image, PORTRAIT_SHADE, SELFIE_SHADE, FACELESS_SHADE
from app import VerificationCoordinator
from config import Settings
from error_handlers import (
    ImageTooDarkError,
    InvalidStepError,
    MatchComparisonFailure,
    VerificationError,
    handle_error,
)


def post(client, url, payload=None):
    response = client.post(url, json=payload or {}, content_type='application/json')
    return response, json.loads(response.data)


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'

    def test_health_includes_services(self, client):
        """Test /health lists capability status."""
        data = json.loads(client.get('/health').data)
        assert set(data['services']) == {'ocr', 'landmark_detector', 'descriptor_extractor'}


class TestSessionEndpoints:
    """Test session inspection and reset."""

    def test_get_session(self, client):
        data = json.loads(client.get('/api/session').data)
        assert data['success'] is True
        assert data['session']['step'] == 'start'

    def test_reset(self, client):
        post(client, '/api/identity/start')
        response, data = post(client, '/api/session/reset')
        assert response.status_code == 200
        assert data['session']['step'] == 'start'

    def test_go_to_start(self, client):
        post(client, '/api/liveness/start')
        _, data = post(client, '/api/start')
        assert data['session']['step'] == 'start'


class TestIdentityEndpoints:
    """Test the government-ID flow over HTTP."""

    def test_full_identity_flow(self, client, sample_base64_image):
        _, data = post(client, '/api/identity/start')
        assert data['session']['step'] == 'identity-front'

        _, data = post(client, '/api/identity/front', {'image': encode_image(shade_image(PORTRAIT_SHADE))})
        assert data['accepted'] is True
        assert data['session']['step'] == 'identity-back'

        _, data = post(client, '/api/identity/back', {'image': sample_base64_image})
        assert data['complete'] is True
        assert data['data']['national_id'] == '12345678901'

        _, data = post(client, '/api/identity/confirm')
        assert data['session']['is_government_id_complete'] is True
        assert data['session']['step'] == 'start'
        kinds = [e['kind'] for e in data['events']]
        assert 'stage_completed' in kinds

    def test_front_requires_image(self, client):
        post(client, '/api/identity/start')
        response, data = post(client, '/api/identity/front', {})
        assert response.status_code == 400
        assert data['error_code'] == 'NO_IMAGE'

    def test_invalid_image_payload(self, client):
        post(client, '/api/identity/start')
        response, data = post(client, '/api/identity/front', {'image': 'bm90IGFuIGltYWdl'})
        assert response.status_code == 400
        assert data['error_code'] == 'INVALID_IMAGE'
        assert data['cause'] == 'image_quality'

    def test_front_without_face_reports_advisory(self, client):
        post(client, '/api/identity/start')
        _, data = post(client, '/api/identity/front', {'image': encode_image(shade_image(FACELESS_SHADE))})
        assert data['accepted'] is False
        advisory = data['events'][-1]['advisory']
        assert advisory['kind'] == 'NO_FACE_DETECTED'
        assert advisory['cause'] == 'face_absence'

    def test_wrong_step_conflict(self, client, sample_base64_image):
        response, data = post(client, '/api/identity/back', {'image': sample_base64_image})
        assert response.status_code == 409
        assert data['error_code'] == 'INVALID_STEP'

    def test_confirm_incomplete_rejected(self, client):
        post(client, '/api/identity/start')
        post(client, '/api/identity/front', {'image': encode_image(shade_image(PORTRAIT_SHADE))})
        response, data = post(client, '/api/identity/confirm')
        assert response.status_code == 422
        assert data['error_code'] == 'FIELDS_INCOMPLETE'

    def test_retry(self, client, sample_base64_image):
        post(client, '/api/identity/start')
        post(client, '/api/identity/front', {'image': encode_image(shade_image(PORTRAIT_SHADE))})
        post(client, '/api/identity/back', {'image': sample_base64_image})
        _, data = post(client, '/api/identity/retry')
        assert data['session']['ocr_results'] is None


class TestLivenessEndpoints:
    """Test the liveness flow over HTTP."""

    def test_selfie_and_frames(self, client, controller):
        post(client, '/api/identity/start')
        post(client, '/api/identity/front', {'image': encode_image(shade_image(PORTRAIT_SHADE))})
        post(client, '/api/start')

        post(client, '/api/liveness/start')
        _, data = post(client, '/api/liveness/selfie', {'image': encode_image(shade_image(SELFIE_SHADE))})
        assert data['accepted'] is True
        assert data['session']['step'] == 'liveness-blink'

        from conftest import make_landmarks
        frame = encode_image(shade_image(10, size=(8, 8)))
        t = 0
        for _ in range(2):
            for ear in (0.3, 0.1, 0.3):
                controller.landmark_detector.frames.append(make_landmarks(ear))
                _, data = post(client, '/api/liveness/frame', {'image': frame, 'timestamp': t})
                t += 100
            t += 500

        assert data['session']['is_liveness_complete'] is True
        assert data['session']['step'] == 'start'

    def test_frame_reports_observation(self, client, controller):
        post(client, '/api/liveness/start')
        post(client, '/api/liveness/selfie', {'image': encode_image(shade_image(SELFIE_SHADE))})
        frame = encode_image(shade_image(10, size=(8, 8)))
        _, data = post(client, '/api/liveness/frame', {'image': frame, 'timestamp': 5})
        assert data['observation']['face_detected'] is False

    @pytest.mark.parametrize('timestamp', ['soon', [1], True, 'nan'])
    def test_frame_rejects_bad_timestamp(self, client, timestamp):
        post(client, '/api/liveness/start')
        post(client, '/api/liveness/selfie', {'image': encode_image(shade_image(SELFIE_SHADE))})
        frame = encode_image(shade_image(10, size=(8, 8)))
        response, data = post(client, '/api/liveness/frame', {'image': frame, 'timestamp': timestamp})
        assert response.status_code == 400
        assert data['error_code'] == 'INVALID_TIMESTAMP'


class TestErrorHandling:
    """Test error handling."""

    def test_missing_endpoint_returns_404(self, client):
        response = client.get('/api/nonexistent')
        assert response.status_code == 404

    def test_method_not_allowed(self, client):
        response = client.get('/api/identity/front')
        assert response.status_code == 405

    def test_handle_known_error(self):
        data = handle_error(ImageTooDarkError(12.5, 60))
        assert data['error_code'] == 'IMAGE_TOO_DARK'
        assert data['cause'] == 'image_quality'
        assert data['details']['brightness'] == 12.5

    def test_handle_unexpected_error(self):
        data = handle_error(RuntimeError("boom"))
        assert data['error_code'] == 'UNEXPECTED_ERROR'
        assert data['details']['error_type'] == 'RuntimeError'

    def test_comparison_failure_keeps_source(self):
        error = MatchComparisonFailure("selfie")
        assert isinstance(error, VerificationError)
        assert error.to_dict()['details']['source'] == 'selfie'
        assert error.cause == 'face_absence'


class TestCoordinator:
    """Test the coordinator's long-lived event loop."""

    def test_timed_out_capability_releases_request(self, controller, fake_ocr,
                                                    portrait_image, card_image):
        """Test a stalled OCR call returns at the timeout, not when the call ends."""
        release = threading.Event()

        async def stalled(image):
            await asyncio.to_thread(release.wait, 5)
            return fake_ocr.text
        fake_ocr.recognize = stalled
        controller.scanner.timeout = 0.1

        coordinator = VerificationCoordinator(controller)
        try:
            coordinator.run(controller.start_identity)
            coordinator.run(controller.submit_identity_front, portrait_image)
            started = time.monotonic()
            fields, events = coordinator.run(controller.scan_identity_back, card_image)
            elapsed = time.monotonic() - started
        finally:
            release.set()
            coordinator.close()

        assert fields is None
        assert elapsed < 1.0
        assert events[-1]['advisory']['kind'] == 'PROCESSING_FAILED'

    def test_operation_errors_propagate(self, controller):
        coordinator = VerificationCoordinator(controller)
        try:
            with pytest.raises(InvalidStepError):
                coordinator.run(controller.confirm_identity)
        finally:
            coordinator.close()

    def test_loop_restarts_after_close(self, controller):
        coordinator = VerificationCoordinator(controller)
        coordinator.run(controller.start_identity)
        coordinator.close()
        try:
            coordinator.run(controller.go_to_start)
            assert controller.step.value == 'start'
            assert coordinator.capability_status['ocr'] == 'ready'
        finally:
            coordinator.close()


class TestSettings:
    """Test descriptor backend settings."""

    def test_default_backend_is_dlib(self, monkeypatch):
        monkeypatch.delenv('DESCRIPTOR_BACKEND', raising=False)
        monkeypatch.delenv('FACE_MATCH_THRESHOLD', raising=False)
        settings = Settings.from_env()
        assert settings.descriptors.backend == 'dlib'
        assert settings.face_match_threshold == 0.55

    def test_sface_backend_uses_its_threshold(self, monkeypatch):
        monkeypatch.setenv('DESCRIPTOR_BACKEND', 'SFace')
        monkeypatch.delenv('FACE_MATCH_THRESHOLD', raising=False)
        settings = Settings.from_env()
        assert settings.descriptors.backend == 'sface'
        assert settings.face_match_threshold == pytest.approx(1.128)

    def test_explicit_threshold_wins(self, monkeypatch):
        monkeypatch.setenv('DESCRIPTOR_BACKEND', 'sface')
        monkeypatch.setenv('FACE_MATCH_THRESHOLD', '0.9')
        assert Settings.from_env().face_match_threshold == 0.9
