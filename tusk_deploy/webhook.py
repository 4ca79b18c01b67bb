"""webhook.py — Push-event listener for dashboard auto-updates.

Installed on the target by the webhook-listener phase and run under systemd
with its settings in the environment. Standard library only: this file is
copied verbatim to the host and must not import the rest of the package.

    WEBHOOK_PORT          listen port (default 18792)
    WEBHOOK_SECRET        shared HMAC secret (required)
    DASHBOARD_BRANCH      only pushes to this branch trigger a build (default main)
    WEBHOOK_BUILD_SCRIPT  update script to run (default /opt/poseidon-webhook/update.sh)
    WEBHOOK_LOCK_FILE     advisory lock collapsing concurrent builds
"""
from __future__ import annotations

import errno
import fcntl
import hashlib
import hmac
import json
import logging
import os
import subprocess
import sys
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger("tusk_deploy.webhook")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_PORT = 18792
DEFAULT_BUILD_SCRIPT = "/opt/poseidon-webhook/update.sh"
DEFAULT_LOCK_FILE = "/tmp/poseidon-update.lock"
WEBHOOK_PATH = "/webhook"
MAX_BODY_BYTES = 5 * 1024 * 1024


# ---------------------------------------------------------------------------
# Signature verification
# ---------------------------------------------------------------------------

def verify_signature(secret: str, body: bytes, signature_header: Optional[str]) -> bool:
    """Verify a GitHub ``X-Hub-Signature-256`` header against ``body``."""
    if not secret or not signature_header:
        return False
    if not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    received = signature_header[len("sha256="):]
    return hmac.compare_digest(expected, received)


def sign(secret: str, body: bytes) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Single-flight build
# ---------------------------------------------------------------------------

class SingleFlightBuild:
    """Runs at most one build at a time, across processes, via ``flock``.

    ``trigger`` takes the lock without blocking; the background thread keeps it
    until the build process exits. A trigger that finds the lock held returns
    False and starts nothing.
    """

    def __init__(
        self,
        lock_path: str,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        spawn: Optional[Callable[..., "subprocess.Popen"]] = None,
    ) -> None:
        self.lock_path = lock_path
        self.command = list(command)
        self.env = dict(env) if env is not None else None
        self._spawn = spawn or subprocess.Popen
        self._thread: Optional[threading.Thread] = None
        self.last_exit_code: Optional[int] = None

    def trigger(self) -> bool:
        handle = open(self.lock_path, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            if exc.errno in (errno.EAGAIN, errno.EWOULDBLOCK, errno.EACCES):
                logger.info("[SKIP] Build already running (lock %s held)", self.lock_path)
                return False
            raise
        thread = threading.Thread(target=self._run, args=(handle,), name="dashboard-build", daemon=True)
        self._thread = thread
        thread.start()
        return True

    def _run(self, handle) -> None:
        env = dict(os.environ)
        if self.env:
            env.update(self.env)
        # The update script must not try to take the lock held here.
        env["TUSK_UPDATE_LOCKED"] = "1"
        try:
            logger.info("[START] Build: %s", " ".join(self.command))
            process = self._spawn(self.command, env=env)
            self.last_exit_code = process.wait()
            if self.last_exit_code == 0:
                logger.info("[SUCCESS] Build finished")
            else:
                logger.error("[ERROR] Build exited %s", self.last_exit_code)
        except OSError as exc:
            self.last_exit_code = -1
            logger.error("[ERROR] Build could not start: %s", exc)
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the in-flight build thread; True when nothing is left running."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()


# ---------------------------------------------------------------------------
# Request routing
# ---------------------------------------------------------------------------

def handle_delivery(
    method: str,
    path: str,
    headers: Mapping[str, str],
    body: bytes,
    *,
    secret: str,
    branch: str,
    build: SingleFlightBuild,
) -> Tuple[int, str]:
    """Route one delivery. Returns (HTTP status, response text)."""
    lowered = {str(k).lower(): v for k, v in headers.items()}
    if method != "POST" or path.split("?", 1)[0] != WEBHOOK_PATH:
        return 404, "Not found"
    if not verify_signature(secret, body, lowered.get("x-hub-signature-256")):
        return 401, "Unauthorized"

    event = lowered.get("x-github-event") or ""
    if event != "push":
        return 200, f"Ignored event: {event}"

    try:
        payload = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return 400, "Invalid JSON"
    ref = str(payload.get("ref") or "") if isinstance(payload, dict) else ""
    if ref != f"refs/heads/{branch}":
        return 200, f"Ignored branch: {ref}"

    if build.trigger():
        return 202, "Build triggered"
    return 409, "Build already running"


def make_handler(secret: str, branch: str, build: SingleFlightBuild):
    class WebhookHandler(BaseHTTPRequestHandler):
        server_version = "tusk-webhook/1"

        def _respond(self, status: int, text: str) -> None:
            data = text.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "text/plain; charset=utf-8")
            self.send_header("Content-Length", str(len(data)))
            self.end_headers()
            self.wfile.write(data)

        def _dispatch(self) -> None:
            try:
                length = int(self.headers.get("Content-Length") or 0)
            except ValueError:
                length = -1
            if length < 0 or length > MAX_BODY_BYTES:
                self._respond(413, "Payload too large")
                return
            body = self.rfile.read(length) if length else b""
            status, text = handle_delivery(
                self.command,
                self.path,
                dict(self.headers.items()),
                body,
                secret=secret,
                branch=branch,
                build=build,
            )
            logger.info("[INFO] %s %s -> %d %s", self.command, self.path, status, text)
            self._respond(status, text)

        do_POST = _dispatch
        do_GET = _dispatch
        do_PUT = _dispatch
        do_DELETE = _dispatch

        def log_message(self, format: str, *args) -> None:  # noqa: A002
            logger.debug("[HTTP] " + format, *args)

    return WebhookHandler


def main(argv: Optional[List[str]] = None) -> int:
    logging.basicConfig(level=logging.INFO, stream=sys.stdout, format="%(message)s")
    env = os.environ
    secret = env.get("WEBHOOK_SECRET", "")
    if not secret:
        logger.error("[ERROR] WEBHOOK_SECRET is not set; refusing to start")
        return 2
    port = int(env.get("WEBHOOK_PORT") or DEFAULT_PORT)
    branch = env.get("DASHBOARD_BRANCH") or "main"
    script = env.get("WEBHOOK_BUILD_SCRIPT") or DEFAULT_BUILD_SCRIPT
    build = SingleFlightBuild(env.get("WEBHOOK_LOCK_FILE") or DEFAULT_LOCK_FILE, ["bash", script])

    server = ThreadingHTTPServer(("0.0.0.0", port), make_handler(secret, branch, build))
    logger.info("[INFO] Webhook listener running on port %d (branch %s)", port, branch)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
