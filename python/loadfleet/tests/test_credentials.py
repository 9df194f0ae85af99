import asyncio

import pytest
from pydantic import ValidationError

from loadfleet.models.credentials import AWSApiKey
from loadfleet.secrets.aws import CredentialsNotFound, load_aws_credentials

PROPERTIES = """# aws.properties
accessKey=AKIAPROPS
secretKey = props-secret
"""

SHARED = """[default]
aws_access_key_id = AKIADEFAULT
aws_secret_access_key = default-secret

[loadtest]
aws_access_key_id = AKIALOAD
aws_secret_access_key = load-secret
aws_session_token = token-1
"""


def test_properties_file():
    key = AWSApiKey.from_properties(PROPERTIES)
    assert key == AWSApiKey(access_key_id="AKIAPROPS", secret_access_key="props-secret")
    assert AWSApiKey.from_properties("accessKey=only") is None


def test_environment_variables():
    key = AWSApiKey.from_env(
        {
            "AWS_ACCESS_KEY_ID": "AKIAENV",
            "AWS_SECRET_ACCESS_KEY": "env-secret",
            "AWS_SESSION_TOKEN": "tok",
        }
    )
    assert key is not None and key.session_token == "tok"
    assert AWSApiKey.from_env({"AWS_ACCESS_KEY_ID": "AKIAENV"}) is None


def test_shared_credentials_profile():
    key = AWSApiKey.from_shared_credentials(SHARED, "loadtest")
    assert key is not None
    assert key.access_key_id == "AKIALOAD"
    assert key.session_token == "token-1"
    assert AWSApiKey.from_shared_credentials(SHARED, "missing") is None


def test_blank_keys_are_rejected():
    with pytest.raises(ValidationError):
        AWSApiKey(access_key_id=" ", secret_access_key="s")


def test_chain_prefers_properties_file(tmp_path):
    props = tmp_path / "aws.properties"
    props.write_text(PROPERTIES)
    env = {"AWS_ACCESS_KEY_ID": "AKIAENV", "AWS_SECRET_ACCESS_KEY": "env-secret"}

    key = asyncio.run(
        load_aws_credentials(str(props), env=env, use_instance_metadata=False)
    )
    assert key.access_key_id == "AKIAPROPS"


def test_chain_falls_through_to_shared_file(tmp_path):
    shared = tmp_path / "credentials"
    shared.write_text(SHARED)
    env = {"AWS_SHARED_CREDENTIALS_FILE": str(shared), "AWS_PROFILE": "loadtest"}

    key = asyncio.run(
        load_aws_credentials(
            str(tmp_path / "missing.properties"), env=env, use_instance_metadata=False
        )
    )
    assert key.access_key_id == "AKIALOAD"


def test_chain_without_any_source_raises(tmp_path):
    env = {"AWS_SHARED_CREDENTIALS_FILE": str(tmp_path / "none")}

    with pytest.raises(CredentialsNotFound):
        asyncio.run(
            load_aws_credentials(
                str(tmp_path / "missing.properties"), env=env, use_instance_metadata=False
            )
        )
