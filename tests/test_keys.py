from __future__ import annotations

import paramiko
import pytest
from paramiko.pkey import UnknownKeyType

from stratus.core.exceptions import ConfigurationError
from stratus.keys import (
    compute_fingerprint,
    generate_keypair,
    host_key_fingerprint,
    load_private_key,
    ssh_keys_metadata,
)


class TestFingerprint:
    def test_md5_colon_format(self):
        pair = generate_keypair()
        fingerprint = compute_fingerprint(pair.public)
        assert len(fingerprint.split(":")) == 16
        assert fingerprint == pair.fingerprint

    def test_matches_host_key_fingerprint(self):
        pair = generate_keypair()
        assert host_key_fingerprint(pair.private) == pair.fingerprint

    def test_invalid_key(self):
        assert compute_fingerprint("not-a-key") == ""
        assert compute_fingerprint("ssh-rsa !!!notbase64") == ""


class TestKeyPair:
    def test_public_line_format(self):
        pair = generate_keypair(comment="ci")
        kind, body, comment = pair.public.split()
        assert kind == "ssh-rsa"
        assert body == pair.private.get_base64()
        assert comment == "ci"

    def test_ssh_keys_metadata(self):
        assert ssh_keys_metadata("ci", "ssh-rsa AAAA ci\n") == "ci:ssh-rsa AAAA ci"


class TestLoadPrivateKey:
    def test_loads_rsa_key(self, tmp_path):
        key = paramiko.RSAKey.generate(1024)
        path = tmp_path / "id_rsa"
        key.write_private_key_file(str(path))

        assert load_private_key(str(path)).get_base64() == key.get_base64()

    def test_unsupported_key_type_is_configuration_error(self, tmp_path, monkeypatch):
        path = tmp_path / "id_weird"
        path.write_text("weird")

        def unknown(cls, *args, **kwargs):
            raise UnknownKeyType(key_type="x-weird", key_bytes=b"")

        monkeypatch.setattr(paramiko.PKey, "from_path", classmethod(unknown))

        with pytest.raises(ConfigurationError, match="Cannot read private key"):
            load_private_key(str(path))
