"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
from pathlib import Path
import tempfile
import unittest

from relay_chat.config import DEFAULT_CONFIG, load_config, resolve_token


class ConfigTests(unittest.TestCase):
    """Validate config merge and fallback behavior."""

    def test_missing_config_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config = load_config(config_path=Path(temp_dir) / "config.toml")
            self.assertEqual(config, DEFAULT_CONFIG)
            self.assertEqual(config["relay"]["model"], "grok-4")
            self.assertEqual(config["relay"]["temperature"], 0.7)
            self.assertEqual(config["attachments"]["max_attachment_bytes"], 10 * 1024 * 1024)
            self.assertEqual(config["attachments"]["max_attachments_per_batch"], 50)
            self.assertEqual(config["attachments"]["mode"], "inline")

    def test_partial_config_overrides_selected_values(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text(
                """
[relay]
url = "https://project.supabase.co/functions/v1/proxy-xai"
model = "grok-4-fast"

[attachments]
mode = "Remote"
storage_url = "https://project.supabase.co/storage/v1"
                """.strip(),
                encoding="utf-8",
            )
            config = load_config(config_path=config_path)
            self.assertEqual(config["relay"]["model"], "grok-4-fast")
            self.assertEqual(config["attachments"]["mode"], "remote")
            self.assertEqual(config["relay"]["temperature"], DEFAULT_CONFIG["relay"]["temperature"])
            self.assertEqual(config["logging"], DEFAULT_CONFIG["logging"])

    def test_invalid_values_fallback_to_defaults(self) -> None:
        cases = {
            "bad scheme": '[relay]\nurl = "ftp://relay.test/x"',
            "no host": '[relay]\nurl = "https:///x"',
            "temperature": "[relay]\ntemperature = 5.0",
            "remote without storage": '[attachments]\nmode = "remote"',
            "log level": '[logging]\nlevel = "LOUD"',
        }
        for label, text in cases.items():
            with self.subTest(label), tempfile.TemporaryDirectory() as temp_dir:
                config_path = Path(temp_dir) / "config.toml"
                config_path.write_text(text, encoding="utf-8")
                self.assertEqual(load_config(config_path=config_path), DEFAULT_CONFIG)

    def test_unparseable_toml_uses_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text("[relay\nurl = ", encoding="utf-8")
            self.assertEqual(load_config(config_path=config_path), DEFAULT_CONFIG)

    @unittest.skipUnless(os.name == "posix", "POSIX permissions only")
    def test_config_file_is_made_private(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "config.toml"
            config_path.write_text('[auth]\ntoken = "secret"', encoding="utf-8")
            config_path.chmod(0o644)
            config = load_config(config_path=config_path)
            self.assertEqual(config["auth"]["token"], "secret")
            self.assertEqual(config_path.stat().st_mode & 0o777, 0o600)

    def test_resolve_token_prefers_environment(self) -> None:
        config = {"auth": {"token": "from-file", "token_env": "RELAY_CHAT_TOKEN"}}
        self.assertEqual(resolve_token(config, {"RELAY_CHAT_TOKEN": " from-env "}), "from-env")
        self.assertEqual(resolve_token(config, {}), "from-file")
        self.assertEqual(resolve_token({"auth": {"token_env": ""}}, {"X": "y"}), "")


if __name__ == "__main__":
    unittest.main()
