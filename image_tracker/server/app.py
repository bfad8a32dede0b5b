from __future__ import annotations

import logging
import mimetypes
import os
import time
import uuid
from typing import Any, Callable, Dict, Optional

import yaml
from flask import Flask, Response, jsonify, request
from PIL import Image, UnidentifiedImageError
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import RequestEntityTooLarge
from werkzeug.utils import secure_filename

from .beacons import BeaconDispatcher, RequestInfo
from .correlation import CorrelationConfig, CorrelationEngine
from .network import NetworkClassifier, NetworkConfig
from .pages import clickable_page, downloadable_tracker, landing_page
from .pixel import NO_CACHE_HEADERS, transparent_pixel_gif
from .store import (
    CLICKABLE_IMAGE,
    DOWNLOADED_IMAGE,
    EMAIL_EMBED,
    WEBSITE_VIEW,
    TrackedAsset,
    ViewStore,
    utc_iso,
)

logger = logging.getLogger(__name__)

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))


class UploadRejected(ValueError):
    pass


def config_path() -> str:
    return os.environ.get("IMAGE_TRACKER_CONFIG", os.path.join(ROOT, "config.yaml"))


def load_config(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def network_config(cfg: Dict[str, Any], resolve: Callable[[str], str]) -> NetworkConfig:
    geoip = cfg.get("geoip") or {}
    lookup = cfg.get("lookup") or {}
    city_db = geoip.get("city_db")
    asn_db = geoip.get("asn_db")
    return NetworkConfig(
        city_db=resolve(str(city_db)) if city_db else None,
        asn_db=resolve(str(asn_db)) if asn_db else None,
        lookup_enabled=bool(lookup.get("enabled", True)),
        lookup_url_template=str(lookup.get("url_template") or NetworkConfig.lookup_url_template),
        lookup_timeout_seconds=float(lookup.get("timeout_seconds", NetworkConfig.lookup_timeout_seconds)),
    )


def correlation_config(cfg: Dict[str, Any]) -> CorrelationConfig:
    c = cfg.get("correlation") or {}
    return CorrelationConfig(
        enrichment_window_seconds=float(
            c.get("enrichment_window_seconds", CorrelationConfig.enrichment_window_seconds)
        ),
        stealth_window_seconds=float(c.get("stealth_window_seconds", CorrelationConfig.stealth_window_seconds)),
    )


def _client_ip(trust_proxy_headers: bool) -> str:
    if trust_proxy_headers:
        xff = request.headers.get("X-Forwarded-For")
        if xff:
            # Left-most is original client in standard practice.
            return xff.split(",")[0].strip()
    return request.remote_addr or ""


def _request_info(trust_proxy_headers: bool) -> RequestInfo:
    return RequestInfo(
        address=_client_ip(trust_proxy_headers),
        user_agent=request.headers.get("User-Agent", ""),
        language=request.headers.get("Accept-Language", ""),
        referrer=request.headers.get("Referer", ""),
        headers=tuple((k, v) for k, v in request.headers.items()),
    )


def _pixel_response() -> Response:
    resp = Response(transparent_pixel_gif(), mimetype="image/gif")
    resp.headers.update(NO_CACHE_HEADERS)
    return resp


def _asset_mimetype(asset: TrackedAsset) -> str:
    return mimetypes.guess_type(asset.asset_path)[0] or "application/octet-stream"


def _read_asset(asset: TrackedAsset) -> bytes:
    with open(asset.asset_path, "rb") as f:
        return f.read()


def _validated_extension(file: FileStorage) -> str:
    """
    Check the upload decodes as an image; return the extension to store it under.
    """
    try:
        with Image.open(file.stream) as img:
            fmt = (img.format or "").lower()
            img.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as e:
        raise UploadRejected("Uploaded file is not a valid image") from e
    finally:
        file.stream.seek(0)

    ext = os.path.splitext(secure_filename(file.filename or ""))[1].lower()
    if not ext and fmt:
        ext = "." + ("jpg" if fmt == "jpeg" else fmt)
    return ext


def create_app(
    config: Optional[Dict[str, Any]] = None,
    *,
    classifier: Optional[NetworkClassifier] = None,
    clock: Callable[[], float] = time.time,
) -> Flask:
    if config is None:
        cfg_path = config_path()
        cfg = load_config(cfg_path)
        cfg_dir = os.path.dirname(os.path.abspath(cfg_path))
    else:
        cfg = config
        cfg_dir = os.getcwd()

    def resolve_from_cfg_dir(p: str) -> str:
        # Treat relative paths in config as relative to the config file location.
        if os.path.isabs(p):
            return p
        return os.path.abspath(os.path.join(cfg_dir, p))

    server_cfg = cfg.get("server") or {}
    storage_cfg = cfg.get("storage") or {}
    trust_proxy_headers = bool(server_cfg.get("trust_proxy_headers", True))
    public_base_url = str(server_cfg.get("public_base_url") or "").rstrip("/")
    upload_dir = resolve_from_cfg_dir(str(storage_cfg.get("upload_dir") or "uploads"))
    os.makedirs(upload_dir, exist_ok=True)

    store = ViewStore()
    if classifier is None:
        classifier = NetworkClassifier.from_config(network_config(cfg, resolve_from_cfg_dir))
    engine = CorrelationEngine(store, correlation_config(cfg), clock=clock)
    beacons = BeaconDispatcher(store, classifier, engine, clock=clock)

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = int(float(storage_cfg.get("max_upload_mb", 10)) * 1024 * 1024)
    app.extensions["image_tracker"] = {"store": store, "engine": engine, "beacons": beacons}

    def base_url() -> str:
        return public_base_url or request.host_url.rstrip("/")

    def info() -> RequestInfo:
        return _request_info(trust_proxy_headers)

    def json_body() -> Dict[str, Any]:
        payload = request.get_json(force=True, silent=True)
        return payload if isinstance(payload, dict) else {}

    def not_found_json() -> Response:
        return jsonify({"error": "Tracking ID not found"}), 404

    def serve_image(tracking_id: str, source: str) -> Response:
        asset = store.get(tracking_id)
        if asset is None:
            return _pixel_response()
        try:
            body = _read_asset(asset)
        except OSError as e:
            logger.warning(f"Asset for {tracking_id} unreadable: {e}")
            return jsonify({"error": "Image unavailable"}), 500
        beacons.record_view(tracking_id, info(), source)  # type: ignore[arg-type]
        resp = Response(body, mimetype=_asset_mimetype(asset))
        resp.headers.update(NO_CACHE_HEADERS)
        return resp

    def render_page(tracking_id: str, render: Callable[[bytes, str], str]) -> Response:
        asset = store.get(tracking_id)
        if asset is None:
            # Unknown ids get the same page around a blank image; their beacons are dropped server-side.
            body, mimetype = transparent_pixel_gif(), "image/gif"
        else:
            try:
                body = _read_asset(asset)
            except OSError as e:
                logger.warning(f"Asset for {tracking_id} unreadable: {e}")
                return Response("Image unavailable", status=500, mimetype="text/plain")
            mimetype = _asset_mimetype(asset)
        resp = Response(render(body, mimetype), mimetype="text/html")
        resp.headers.update(NO_CACHE_HEADERS)
        return resp

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(e: RequestEntityTooLarge) -> Response:
        return jsonify({"error": "Image too large"}), 413

    @app.get("/health")
    def health() -> Response:
        return jsonify({"status": "ok", "timestamp": utc_iso(clock())})

    # -------- upload / API --------
    @app.post("/api/upload")
    def upload() -> Response:
        file = request.files.get("image")
        if file is None or not file.filename:
            return jsonify({"error": "No image uploaded"}), 400
        try:
            ext = _validated_extension(file)
        except UploadRejected as e:
            return jsonify({"error": str(e)}), 400

        path = os.path.join(upload_dir, f"{uuid.uuid4()}{ext}")
        try:
            file.save(path)
        except OSError as e:
            logger.error(f"Failed to store upload {file.filename!r}: {e}")
            return jsonify({"error": "Failed to store image"}), 500

        tracking_id = str(uuid.uuid4())
        store.register(tracking_id, path, created_at=clock())
        logger.info(f"Registered {tracking_id} -> {path}")

        base = base_url()
        links = {
            "pixel_url": f"{base}/track-view/{tracking_id}",
            "landing_page": f"{base}/view/{tracking_id}",
            "image_url": f"{base}/track/{tracking_id}",
            "email_image": f"{base}/email-image/{tracking_id}",
            "clickable_image": f"{base}/clickable-image/{tracking_id}",
            "downloadable_tracker": f"{base}/downloadable-tracker/{tracking_id}",
            "email_html": f'<img src="{base}/email-image/{tracking_id}" alt="" />',
            "tracking_data": f"{base}/api/tracking/{tracking_id}",
        }
        return jsonify(
            {
                "success": True,
                "trackingId": tracking_id,
                "imageUrl": links["landing_page"],
                "trackingUrl": links["image_url"],
                "links": links,
            }
        )

    @app.get("/api/tracking/<tracking_id>")
    def tracking_data(tracking_id: str) -> Response:
        asset = store.get(tracking_id)
        if asset is None:
            return not_found_json()
        return jsonify(asset.to_dict())

    # -------- passive beacons (never reveal unknown ids) --------
    @app.get("/track-view/<tracking_id>")
    def track_view(tracking_id: str) -> Response:
        beacons.record_view(tracking_id, info(), WEBSITE_VIEW)
        return _pixel_response()

    @app.get("/track/<tracking_id>")
    def track_image(tracking_id: str) -> Response:
        return serve_image(tracking_id, WEBSITE_VIEW)

    @app.get("/email-image/<tracking_id>")
    def email_image(tracking_id: str) -> Response:
        return serve_image(tracking_id, EMAIL_EMBED)

    @app.get("/update-browser/<tracking_id>")
    def update_browser(tracking_id: str) -> Response:
        beacons.update_browser(tracking_id, info(), request.args.get("browser", default="", type=str))
        return _pixel_response()

    @app.get("/stealth-track/<tracking_id>")
    def stealth_track(tracking_id: str) -> Response:
        beacons.record_view(tracking_id, info(), DOWNLOADED_IMAGE)
        return _pixel_response()

    # -------- pages --------
    @app.get("/view/<tracking_id>")
    def view_page(tracking_id: str) -> Response:
        return render_page(
            tracking_id,
            lambda body, mimetype: landing_page(
                base_url=base_url(), tracking_id=tracking_id, image_bytes=body, mimetype=mimetype
            ),
        )

    @app.get("/clickable-image/<tracking_id>")
    def clickable_image(tracking_id: str) -> Response:
        def render(body: bytes, mimetype: str) -> str:
            beacons.record_view(tracking_id, info(), CLICKABLE_IMAGE)
            return clickable_page(
                base_url=base_url(), tracking_id=tracking_id, image_bytes=body, mimetype=mimetype
            )

        return render_page(tracking_id, render)

    @app.get("/downloadable-tracker/<tracking_id>")
    def downloadable(tracking_id: str) -> Response:
        title = f"image_{tracking_id[:8]}"
        resp = render_page(
            tracking_id,
            lambda body, mimetype: downloadable_tracker(
                base_url=base_url(),
                tracking_id=tracking_id,
                image_bytes=body,
                mimetype=mimetype,
                title=title,
            ),
        )
        if resp.status_code == 200:
            resp.headers["Content-Disposition"] = f'attachment; filename="{title}.html"'
        return resp

    # -------- JSON side channels --------
    @app.post("/enhanced-tracking/<tracking_id>")
    def enhanced_tracking(tracking_id: str) -> Response:
        if store.get(tracking_id) is None:
            return not_found_json()
        record = beacons.enhanced(tracking_id, info(), json_body())
        return jsonify({"success": True, "merged": record is not None})

    @app.post("/track-click/<tracking_id>")
    def track_click(tracking_id: str) -> Response:
        if store.get(tracking_id) is None:
            return not_found_json()
        record = beacons.click(tracking_id, info(), json_body())
        return jsonify({"success": True, "clickCount": record.click_count if record else 0})

    @app.post("/stealth-track-data/<tracking_id>")
    def stealth_track_data(tracking_id: str) -> Response:
        if store.get(tracking_id) is None:
            return not_found_json()
        record = beacons.stealth_data(tracking_id, info(), json_body())
        return jsonify({"success": True, "merged": record is not None})

    return app


def main() -> None:
    cfg = load_config(config_path())
    level = str((cfg.get("logging") or {}).get("level", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO))

    app = create_app()
    server_cfg = cfg.get("server") or {}
    host = str(server_cfg.get("host", "127.0.0.1"))
    port = int(os.environ.get("PORT") or server_cfg.get("port", 3000))
    logger.info(f"Tracking server running on {host}:{port}")
    app.run(host=host, port=port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
