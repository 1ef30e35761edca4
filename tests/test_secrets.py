import base64
import json
import os
import tempfile
import unittest

from engine.job_store import JobStore
from providers.secrets import SecretError, decrypt_config, decrypt_text, encrypt_config, encrypt_text


class SecretTests(unittest.TestCase):
    def test_layout_is_iv_tag_ciphertext(self):
        payload = encrypt_text("hello", "k")
        raw = base64.b64decode(payload)
        self.assertEqual(len(raw), 12 + 16 + len("hello"))
        self.assertEqual(decrypt_text(payload, "k"), "hello")

    def test_wrong_key_fails(self):
        payload = encrypt_text("hello", "k")
        with self.assertRaises(SecretError):
            decrypt_text(payload, "other")

    def test_garbage_fails(self):
        with self.assertRaises(SecretError):
            decrypt_text("not base64!", "k")
        with self.assertRaises(SecretError):
            decrypt_text(base64.b64encode(b"short").decode(), "k")

    def test_missing_key(self):
        with self.assertRaises(SecretError):
            encrypt_text("hello", "")

    def test_config_round_trip(self):
        row = {"id": 1, "config_json": encrypt_config({"username": "u", "password": "p"}, "k")}
        self.assertEqual(decrypt_config(row, "k"), {"username": "u", "password": "p"})
        self.assertEqual(decrypt_config({"config_json": ""}, "k"), {})


class PlaintextMigrationTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "jobs.sqlite")
        self.store = JobStore(self.db_path)

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_plaintext_is_accepted_and_reencrypted(self):
        plaintext = json.dumps({"wst": "token"})
        provider_id = self.store.create_provider("webshare", "Webshare", plaintext)
        row = self.store.get_provider(provider_id)

        self.assertEqual(decrypt_config(row, "k", self.db_path), {"wst": "token"})
        stored = self.store.get_provider(provider_id)["config_json"]
        self.assertNotEqual(stored, plaintext)
        self.assertEqual(json.loads(decrypt_text(stored, "k")), {"wst": "token"})

    def test_undecryptable_non_json_raises(self):
        with self.assertRaises(SecretError):
            decrypt_config({"id": 1, "config_json": "garbage"}, "k", self.db_path)


if __name__ == "__main__":
    unittest.main()
