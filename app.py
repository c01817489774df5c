"""
ID + Liveness Verification Service
Thin coordinator for the layered verification core.

Provides REST API for:
- Government ID capture (portrait crop from the front, MRZ scan of the back)
- Liveness (selfie capture, blink detection on pushed frames, face match)
- Session inspection and reset
"""
import asyncio
import inspect
import logging
import math
import threading
import time

from flask import Flask, jsonify, request
from flask_cors import CORS

from config import Settings
from error_handlers import (
    FlowError,
    InvalidStepError,
    VerificationError,
    handle_error,
)
from layer1_preprocessing import MRZPreprocessor, decode_image
from layer2_mrz import MRZParser, MRZScanner, TesseractOCR
from layer3_liveness import BlinkCounter, MediaPipeLandmarkDetector
from layer4_face_match import FaceComparator, FaceMatcher, create_descriptor_extractor
from layer5_flow import VerificationFlowController

logger = logging.getLogger(__name__)


def build_controller(settings: Settings) -> VerificationFlowController:
    """Wire the default capabilities and components together."""
    scanner = MRZScanner(
        preprocessor=MRZPreprocessor(settings.preprocess),
        ocr=TesseractOCR(settings.ocr),
        parser=MRZParser(heuristics=settings.heuristics),
        timeout=settings.capability_timeout,
    )
    comparator = FaceComparator(
        extractor=create_descriptor_extractor(settings.descriptors),
        matcher=FaceMatcher(threshold=settings.face_match_threshold),
        timeout=settings.capability_timeout,
    )
    return VerificationFlowController(
        scanner=scanner,
        comparator=comparator,
        landmark_detector=MediaPipeLandmarkDetector(settings.landmarks),
        blink_counter=BlinkCounter(settings.blink),
        face_padding=settings.face_crop_padding,
        timeout=settings.capability_timeout,
    )


class VerificationCoordinator:
    """
    Bridges Flask's synchronous request handlers to the async verification core.

    Every controller operation runs on one long-lived event loop owned by a
    background thread. A capability call abandoned by its timeout keeps its
    worker thread, but the request returns as soon as the timeout fires.
    Requests are serialized so only one operation touches the session at a time.
    """

    def __init__(self, controller: VerificationFlowController):
        logger.info("Initializing VerificationCoordinator")
        self.controller = controller
        self.capabilities = {
            "ocr": controller.scanner.ocr,
            "landmark_detector": controller.landmark_detector,
            "descriptor_extractor": controller.comparator.extractor,
        }
        self.capability_status = {name: "pending" for name in self.capabilities}
        self._lock = threading.Lock()
        self._initialized = False
        self._loop = None
        self._thread = None

    def _ensure_loop(self):
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
            self._thread = threading.Thread(
                target=self._loop.run_forever, name="verification-loop", daemon=True
            )
            self._thread.start()
            logger.debug("Event loop thread started")
        return self._loop

    def _submit(self, coro):
        """Run a coroutine on the loop thread and wait for its result."""
        future = asyncio.run_coroutine_threadsafe(coro, self._ensure_loop())
        return future.result()

    def _stop_loop(self):
        if self._loop is None:
            return
        loop, thread = self._loop, self._thread
        self._loop = None
        self._thread = None
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5)
        if not thread.is_alive():
            # Does not wait for executor threads still stuck in a capability
            loop.close()
        logger.debug("Event loop thread stopped")

    def ensure_initialized(self):
        """Initialize every capability once; failures are reported, not raised."""
        with self._lock:
            if self._initialized:
                return
            self._submit(self._initialize_all())
            self._initialized = True

    async def _initialize_all(self):
        for name, capability in self.capabilities.items():
            try:
                await capability.initialize()
                self.capability_status[name] = "ready"
                logger.info(f"✓ {name} ready")
            except Exception as e:
                self.capability_status[name] = "unavailable"
                logger.error(f"{name} initialization failed: {e}")

    def close(self):
        with self._lock:
            if self._loop is not None:
                self._submit(self._close_all())
            self._stop_loop()
            self._initialized = False

    async def _close_all(self):
        self.controller.stop_blink_detection()
        for name, capability in self.capabilities.items():
            try:
                await capability.close()
            except Exception as e:
                logger.warning(f"Failed to close {name}: {e}")
            self.capability_status[name] = "closed"

    def run(self, operation, *args):
        """
        Run one controller operation and collect the events it emitted.

        Returns:
            tuple: (operation result, list of event dicts)
        """
        self.ensure_initialized()
        events = []

        async def invoke():
            result = operation(*args)
            if inspect.isawaitable(result):
                result = await result
            return result

        with self._lock:
            self.controller.add_listener(events.append)
            try:
                result = self._submit(invoke())
            finally:
                self.controller.remove_listener(events.append)
        return result, [event.to_dict() for event in events]


def _read_image():
    payload = request.get_json(silent=True) or {}
    image = payload.get("image")
    if not image:
        return None, payload
    return decode_image(image), payload


def _no_image_response():
    return jsonify({
        "success": False,
        "error": "No image provided",
        "error_code": "NO_IMAGE"
    }), 400


def _parse_timestamp(value):
    """Frame timestamp in milliseconds, or None if it is not a finite number."""
    if isinstance(value, bool):
        return None
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        return None
    return timestamp if math.isfinite(timestamp) else None


def _invalid_timestamp_response():
    return jsonify({
        "success": False,
        "error": "timestamp must be a number of milliseconds",
        "error_code": "INVALID_TIMESTAMP"
    }), 400


def create_app(controller: VerificationFlowController = None, settings: Settings = None) -> Flask:
    """
    Create the Flask application.

    Args:
        controller: Pre-built flow controller (tests inject fakes here)
        settings: Service settings; read from the environment if omitted
    """
    settings = settings or Settings.from_env()
    controller = controller or build_controller(settings)
    coordinator = VerificationCoordinator(controller)

    app = Flask(__name__)
    app.config["SETTINGS"] = settings
    app.config["COORDINATOR"] = coordinator

    # Enable CORS for the kiosk frontend
    CORS(app, origins=["*"])

    def respond(operation, *args, **extra):
        result, events = coordinator.run(operation, *args)
        body = {
            "success": True,
            "session": controller.snapshot(),
            "events": events,
        }
        body.update(extra)
        return body, result

    @app.errorhandler(VerificationError)
    def verification_error(e):
        if isinstance(e, InvalidStepError):
            status = 409
        elif isinstance(e, FlowError):
            status = 422
        else:
            status = 400
        body = handle_error(e)
        body["session"] = controller.snapshot()
        return jsonify(body), status

    @app.route("/health", methods=["GET"])
    def health_check():
        """Health check endpoint for service discovery and load balancers"""
        status = coordinator.capability_status
        healthy = all(value in ("ready", "pending") for value in status.values())
        return jsonify({
            "status": "healthy" if healthy else "degraded",
            "service": "verification-service",
            "version": "1.0.0",
            "environment": settings.app_env,
            "services": dict(status),
        })

    @app.route("/api/session", methods=["GET"])
    def get_session():
        return jsonify({"success": True, "session": controller.snapshot()})

    @app.route("/api/session/reset", methods=["POST"])
    def reset_session():
        logger.info("Session reset requested")
        body, _ = respond(controller.reset)
        return jsonify(body)

    @app.route("/api/start", methods=["POST"])
    def go_to_start():
        body, _ = respond(controller.go_to_start)
        return jsonify(body)

    # Government ID stage
    @app.route("/api/identity/start", methods=["POST"])
    def start_identity():
        body, _ = respond(controller.start_identity)
        return jsonify(body)

    @app.route("/api/identity/front", methods=["POST"])
    def identity_front():
        logger.info("ID front photo received")
        image, _ = _read_image()
        if image is None:
            return _no_image_response()
        body, accepted = respond(controller.submit_identity_front, image)
        body["accepted"] = accepted
        return jsonify(body)

    @app.route("/api/identity/back", methods=["POST"])
    def identity_back():
        logger.info("ID back photo received")
        image, _ = _read_image()
        if image is None:
            return _no_image_response()
        body, fields = respond(controller.scan_identity_back, image)
        body["data"] = fields.to_dict() if fields else None
        body["complete"] = bool(fields and fields.is_complete)
        return jsonify(body)

    @app.route("/api/identity/confirm", methods=["POST"])
    def confirm_identity():
        body, _ = respond(controller.confirm_identity)
        return jsonify(body)

    @app.route("/api/identity/retry", methods=["POST"])
    def retry_identity():
        body, _ = respond(controller.retry_identity)
        return jsonify(body)

    # Liveness stage
    @app.route("/api/liveness/start", methods=["POST"])
    def start_liveness():
        body, _ = respond(controller.start_liveness)
        return jsonify(body)

    @app.route("/api/liveness/selfie", methods=["POST"])
    def liveness_selfie():
        logger.info("Liveness selfie received")
        image, _ = _read_image()
        if image is None:
            return _no_image_response()
        body, accepted = respond(controller.submit_liveness_selfie, image)
        body["accepted"] = accepted
        return jsonify(body)

    @app.route("/api/liveness/frame", methods=["POST"])
    def liveness_frame():
        image, payload = _read_image()
        if image is None:
            return _no_image_response()
        timestamp = payload.get("timestamp")
        if timestamp is None:
            timestamp = time.monotonic() * 1000
        timestamp = _parse_timestamp(timestamp)
        if timestamp is None:
            return _invalid_timestamp_response()
        body, observation = respond(controller.process_liveness_frame, image, timestamp)
        body["observation"] = None if observation is None else {
            "face_detected": observation.face_detected,
            "eyes_closed": observation.eyes_closed,
            "ear": observation.ear,
        }
        return jsonify(body)

    return app


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    settings = Settings.from_env()

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    print("\n" + "=" * 60)
    print("ID + LIVENESS VERIFICATION SERVICE")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_preprocessing/ - MRZ crop, upscale, binarize")
    print("  layer2_mrz/           - OCR + MRZ parsing")
    print("  layer3_liveness/      - Landmarks + blink counting")
    print("  layer4_face_match/    - Face descriptors + match rule")
    print("  layer5_flow/          - Verification flow controller")
    print("  models/               - Face landmarker / YuNet / SFace models")
    print("\n📡 API Endpoints:")
    print("  GET  /health                - Health check")
    print("  GET  /api/session           - Session snapshot")
    print("  POST /api/identity/front    - ID front photo")
    print("  POST /api/identity/back     - ID back photo (MRZ)")
    print("  POST /api/liveness/selfie   - Liveness selfie")
    print("  POST /api/liveness/frame    - Blink detection frame")
    print("\n" + "=" * 60)

    app = create_app(settings=settings)
    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=5000, debug=settings.debug, threaded=True)
