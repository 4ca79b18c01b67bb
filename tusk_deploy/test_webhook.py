"""test_webhook.py — Tests for the push-event listener.

Covers signature checks, request routing and the single-flight build lock.

Run: python3 -m pytest tusk_deploy/test_webhook.py -v
"""

from __future__ import annotations

import json
import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from tusk_deploy import webhook

SECRET = "s" * 64


def _push(ref="refs/heads/main"):
    return json.dumps({"ref": ref, "after": "abc123"}).encode()


def _deliver(body, *, event="push", signature=None, build=None, method="POST", path="/webhook"):
    headers = {
        "X-GitHub-Event": event,
        "X-Hub-Signature-256": signature if signature is not None else webhook.sign(SECRET, body),
    }
    if build is None:
        build = MagicMock()
        build.trigger.return_value = True
    return webhook.handle_delivery(method, path, headers, body, secret=SECRET, branch="main", build=build)


class _BlockingProcess:
    def __init__(self, release, exit_code=0):
        self._release = release
        self._exit_code = exit_code

    def wait(self):
        self._release.wait(5)
        return self._exit_code


class TestSignature(unittest.TestCase):
    def test_valid_signature_accepted(self):
        body = _push()
        self.assertTrue(webhook.verify_signature(SECRET, body, webhook.sign(SECRET, body)))

    def test_wrong_secret_or_body_rejected(self):
        body = _push()
        self.assertFalse(webhook.verify_signature(SECRET, body, webhook.sign("other", body)))
        self.assertFalse(webhook.verify_signature(SECRET, body + b" ", webhook.sign(SECRET, body)))

    def test_missing_or_malformed_header_rejected(self):
        body = _push()
        self.assertFalse(webhook.verify_signature(SECRET, body, None))
        self.assertFalse(webhook.verify_signature(SECRET, body, "sha1=abc"))

    def test_empty_secret_rejects_everything(self):
        body = _push()
        self.assertFalse(webhook.verify_signature("", body, webhook.sign("", body)))


class TestRouting(unittest.TestCase):
    def test_matching_push_triggers_build(self):
        build = MagicMock()
        build.trigger.return_value = True
        self.assertEqual(_deliver(_push(), build=build), (202, "Build triggered"))
        build.trigger.assert_called_once()

    def test_busy_build_returns_409(self):
        build = MagicMock()
        build.trigger.return_value = False
        self.assertEqual(_deliver(_push(), build=build), (409, "Build already running"))

    def test_bad_signature_never_reaches_build(self):
        build = MagicMock()
        self.assertEqual(_deliver(_push(), signature="sha256=00", build=build), (401, "Unauthorized"))
        build.trigger.assert_not_called()

    def test_wrong_path_or_method_is_404(self):
        self.assertEqual(_deliver(_push(), path="/other")[0], 404)
        self.assertEqual(_deliver(_push(), method="GET")[0], 404)

    def test_non_push_event_ignored(self):
        self.assertEqual(_deliver(_push(), event="ping"), (200, "Ignored event: ping"))

    def test_other_branch_ignored(self):
        self.assertEqual(_deliver(_push("refs/heads/dev")), (200, "Ignored branch: refs/heads/dev"))

    def test_invalid_json_is_400(self):
        self.assertEqual(_deliver(b"not json"), (400, "Invalid JSON"))


class TestSingleFlightBuild(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.lock_path = str(Path(self._tmp.name) / "update.lock")

    def tearDown(self):
        self._tmp.cleanup()

    def test_concurrent_triggers_collapse_to_one_build(self):
        release = threading.Event()
        spawn = MagicMock(return_value=_BlockingProcess(release))
        build = webhook.SingleFlightBuild(self.lock_path, ["bash", "update.sh"], spawn=spawn)

        self.assertTrue(build.trigger())
        self.assertFalse(build.trigger())
        release.set()
        self.assertTrue(build.wait(5))

        spawn.assert_called_once()
        self.assertEqual(spawn.call_args.kwargs["env"]["TUSK_UPDATE_LOCKED"], "1")
        self.assertEqual(build.last_exit_code, 0)

        self.assertTrue(build.trigger())
        self.assertTrue(build.wait(5))

    def test_build_that_cannot_start_releases_the_lock(self):
        spawn = MagicMock(side_effect=FileNotFoundError("bash"))
        build = webhook.SingleFlightBuild(self.lock_path, ["bash", "missing.sh"], spawn=spawn)

        self.assertTrue(build.trigger())
        self.assertTrue(build.wait(5))
        self.assertEqual(build.last_exit_code, -1)
        self.assertTrue(build.trigger())
        self.assertTrue(build.wait(5))


if __name__ == "__main__":
    unittest.main()
