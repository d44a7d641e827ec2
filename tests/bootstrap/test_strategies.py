from __future__ import annotations

from unittest.mock import MagicMock

import paramiko
import pytest
from fakes import make_config, make_windows_config

from stratus.bootstrap.auth import (
    PasswordAuthenticator,
    PrivateKeyAuthenticator,
    select_authenticator,
)
from stratus.bootstrap.strategies import PosixStrategy, WindowsStrategy, strategy_for
from stratus.configuration import PosixConfiguration, WindowsConfiguration
from stratus.core.exceptions import ConfigurationError
from stratus.keys import generate_keypair


class TestStrategyFor:
    def test_posix(self):
        strategy = strategy_for(make_config(os=PosixConfiguration(run_as_user="ci")))
        assert strategy == PosixStrategy(username="ci")
        assert strategy.auth_attempts == 1

    def test_windows(self):
        strategy = strategy_for(make_windows_config())
        assert isinstance(strategy, WindowsStrategy)
        assert strategy.username == "builder"
        assert (strategy.auth_attempts, strategy.auth_delay) == (30, 15.0)

    def test_posix_commands_are_quoted(self):
        strategy = PosixStrategy(username="ci")
        assert strategy.mkdir_command("/opt/my agent") == "mkdir -p '/opt/my agent'"
        assert strategy.launch_command("/opt/agent/") == "cd /opt/agent/ && java -jar /opt/agent/agent.jar"


class TestSelectAuthenticator:
    def test_generated_key(self):
        pair = generate_keypair()
        auth = select_authenticator(PosixConfiguration(), pair)
        assert isinstance(auth, PrivateKeyAuthenticator)
        assert auth.key is pair.private

    def test_configured_key_wins(self, tmp_path):
        key = paramiko.RSAKey.generate(1024)
        path = tmp_path / "id_rsa"
        key.write_private_key_file(str(path))

        auth = select_authenticator(
            WindowsConfiguration(username="builder", password="pw", private_key_path=str(path)),
        )

        assert isinstance(auth, PrivateKeyAuthenticator)
        assert auth.key.get_base64() == key.get_base64()

    def test_windows_password(self):
        auth = select_authenticator(WindowsConfiguration(username="builder", password="pw"))
        assert auth == PasswordAuthenticator("pw")
        assert "pw" not in repr(auth)

    def test_posix_without_any_key(self):
        with pytest.raises(ConfigurationError, match="No private key"):
            select_authenticator(PosixConfiguration())

    def test_missing_key_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            select_authenticator(PosixConfiguration(private_key_path=str(tmp_path / "nope")))

    def test_private_key_authenticates_with_publickey(self):
        pair = generate_keypair()
        transport = MagicMock()
        PrivateKeyAuthenticator(pair.private).authenticate(transport, "ci")
        transport.auth_publickey.assert_called_once_with("ci", pair.private)
