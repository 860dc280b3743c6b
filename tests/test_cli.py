from __future__ import annotations

import contextlib
import io
import json
import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path

from ig_events.cli import main
from ig_events.storage import SQLiteStateStore


def _write_config(td: str) -> Path:
    root = Path(td)
    cfg = root / "config.yaml"
    cfg.write_text(
        "\n".join(
            [
                "apify:",
                "  token_env: IG_EVENTS_TEST_TOKEN_NEVER_SET",
                "extraction:",
                f"  image_dir: {json.dumps(str(root / 'images'))}",
                "  gemini:",
                "    api_key_env: IG_EVENTS_TEST_GEMINI_NEVER_SET",
                "    model: gemini-test",
                "storage:",
                f"  db_path: {json.dumps(str(root / 'state.sqlite'))}",
                f"  log_path: {json.dumps(str(root / 'run.log'))}",
                "",
            ]
        ),
        encoding="utf-8",
    )
    return cfg


def _run(*argv: str) -> tuple[int, str, str]:
    out, err = io.StringIO(), io.StringIO()
    with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
        code = main(list(argv))
    return code, out.getvalue(), err.getvalue()


class TestCLI(unittest.TestCase):
    def test_add_accounts_and_settings(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = str(_write_config(td))

            code, out, _ = _run("add-accounts", "--config", cfg, "@club", "venue", "--timezone", "America/Toronto")
            self.assertEqual(code, 0)
            self.assertIn("added=club", out)
            self.assertIn("added=venue", out)

            code, out, _ = _run("add-accounts", "--config", cfg, "club")
            self.assertEqual(code, 0)
            self.assertIn("exists=club", out)

            code, out, _ = _run("set-setting", "--config", cfg, "ai_provider", "claude", "--scope", "system")
            self.assertEqual(code, 0)
            self.assertIn("set=system.ai_provider", out)

            with SQLiteStateStore.open(Path(td) / "state.sqlite") as store:
                club = store.get_account("club")
                assert club is not None
                self.assertEqual(club.default_timezone, "America/Toronto")
                self.assertEqual(store.get_setting("system", "ai_provider"), "claude")

            records = [json.loads(line) for line in (Path(td) / "run.log").read_text(encoding="utf-8").splitlines()]
            events = [r["event"] for r in records]
            self.assertEqual(events.count("command_started"), 3)
            self.assertEqual(events.count("command_completed"), 3)
            self.assertTrue(all(r["command"] for r in records))
            self.assertNotIn("claude", json.dumps([r.get("data") for r in records if r["event"] == "setting_stored"]))

    def test_config_errors_exit_2(self) -> None:
        code, _, err = _run("add-accounts", "--config", "/nonexistent/config.yaml", "club")
        self.assertEqual(code, 2)
        self.assertIn("Config file not found", err)

        with tempfile.TemporaryDirectory() as td:
            cfg = str(_write_config(td))

            code, _, err = _run("scrape", "--config", cfg)
            self.assertEqual(code, 2)
            self.assertIn("IG_EVENTS_TEST_TOKEN_NEVER_SET", err)

            code, _, _ = _run("set-setting", "--config", cfg, "ai_provider")
            self.assertEqual(code, 2)

            code, _, err = _run("extract", "--config", cfg, "C1")
            self.assertEqual(code, 2)
            self.assertIn("gemini API key is not configured", err)

    def test_domain_errors_exit_3_and_are_logged(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = str(_write_config(td))
            self.assertEqual(_run("set-setting", "--config", cfg, "gemini_api_key", "secret")[0], 0)

            code, _, err = _run("extract", "--config", cfg, "missing-post")

            self.assertEqual(code, 3)
            self.assertIn("Post not found", err)
            records = [json.loads(line) for line in (Path(td) / "run.log").read_text(encoding="utf-8").splitlines()]
            failed = [r for r in records if r["event"] == "command_failed"]
            self.assertEqual(len(failed), 1)
            self.assertEqual(failed[0]["data"]["error"]["type"], "ExtractionError")
            self.assertNotIn("secret", (Path(td) / "run.log").read_text(encoding="utf-8"))

    def test_unset_setting(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg = str(_write_config(td))
            _run("set-setting", "--config", cfg, "ai_provider", "claude")
            code, out, _ = _run("set-setting", "--config", cfg, "ai_provider", "--unset")
            self.assertEqual(code, 0)
            self.assertIn("unset=instagram.ai_provider", out)
            with SQLiteStateStore.open(Path(td) / "state.sqlite") as store:
                self.assertIsNone(store.get_setting("instagram", "ai_provider"))


class TestCLISmoke(unittest.TestCase):
    def test_module_entrypoint(self) -> None:
        repo_root = Path(__file__).resolve().parents[1]

        with tempfile.TemporaryDirectory() as td:
            cfg = _write_config(td)

            env = dict(os.environ)
            existing_pp = env.get("PYTHONPATH", "")
            env["PYTHONPATH"] = f"{repo_root}{os.pathsep}{existing_pp}" if existing_pp else str(repo_root)

            proc = subprocess.run(
                [sys.executable, "-m", "ig_events", "add-accounts", "--config", str(cfg), "club"],
                cwd=repo_root,
                env=env,
                capture_output=True,
                text=True,
            )

            self.assertEqual(proc.returncode, 0, msg=proc.stderr)
            self.assertIn("added=club", proc.stdout)


if __name__ == "__main__":
    unittest.main()
