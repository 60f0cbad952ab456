import os
import unittest
from unittest import mock

from rental_hub.config import Settings, load_cors_settings, load_settings, parse_static_tokens


class ConfigTests(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = load_settings()
        self.assertEqual(settings.store_backend, "sql")
        self.assertEqual(settings.db_url, Settings.db_url)
        self.assertEqual(settings.auth_backend, "firebase")
        self.assertEqual(settings.lifecycle, "staged")
        self.assertTrue(settings.sweep_enabled)
        self.assertEqual(settings.sweep_interval, 86400)
        self.assertEqual(settings.static_tokens, {})
        self.assertTrue(settings.cors_allow_credentials)

    def test_reads_environment(self):
        env = {
            "RENTAL_HUB_STORE": "Firestore",
            "RENTAL_HUB_LIFECYCLE": "instant",
            "RENTAL_HUB_AUTH": "static",
            "RENTAL_HUB_STATIC_TOKENS": "abc:user-1, def:user-2",
            "SWEEP_ENABLED": "no",
            "SWEEP_INTERVAL_SECONDS": "60",
            "SWEEP_INITIAL_DELAY_SECONDS": "0.5",
            "FIREBASE_PRIVATE_KEY": "-----BEGIN-----\\nline\\n-----END-----",
            "LOG_LEVEL": "debug",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = load_settings()
        self.assertEqual(settings.store_backend, "firestore")
        self.assertEqual(settings.lifecycle, "instant")
        self.assertEqual(settings.static_tokens, {"abc": "user-1", "def": "user-2"})
        self.assertFalse(settings.sweep_enabled)
        self.assertEqual(settings.sweep_interval, 60)
        self.assertEqual(settings.sweep_initial_delay, 0.5)
        self.assertEqual(settings.firebase_private_key, "-----BEGIN-----\nline\n-----END-----")
        self.assertEqual(settings.log_level, "DEBUG")

    def test_wildcard_origin_disables_credentials(self):
        with mock.patch.dict(os.environ, {"CORS_ALLOW_ORIGINS": "*", "CORS_ALLOW_CREDENTIALS": "true"}, clear=True):
            settings = load_settings()
        self.assertEqual(settings.cors_allow_origins, ("*",))
        self.assertFalse(settings.cors_allow_credentials)

    def test_invalid_values_fail_fast(self):
        for env in (
            {"RENTAL_HUB_STORE": "mongodb"},
            {"RENTAL_HUB_LIFECYCLE": "eventual"},
            {"SWEEP_INTERVAL_SECONDS": "daily"},
            {"SWEEP_INITIAL_DELAY_SECONDS": "-1"},
            {"RENTAL_HUB_STATIC_TOKENS": "token-without-uid"},
        ):
            with self.subTest(env=env), mock.patch.dict(os.environ, env, clear=True):
                with self.assertRaises(RuntimeError):
                    load_settings()

    def test_cors_settings_load_even_when_other_values_are_invalid(self):
        env = {
            "RENTAL_HUB_STORE": "mongodb",
            "SWEEP_INTERVAL_SECONDS": "daily",
            "CORS_ALLOW_ORIGINS": "https://rent.example.com, http://localhost:3000",
            "CORS_ALLOW_CREDENTIALS": "false",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            origins, allow_credentials = load_cors_settings()
            with self.assertRaises(RuntimeError):
                load_settings()
        self.assertEqual(origins, ("https://rent.example.com", "http://localhost:3000"))
        self.assertFalse(allow_credentials)

    def test_parse_static_tokens_skips_blanks(self):
        self.assertEqual(parse_static_tokens(" a:1 ,, b:2 ,"), {"a": "1", "b": "2"})
        self.assertEqual(parse_static_tokens(""), {})


if __name__ == "__main__":
    unittest.main()
