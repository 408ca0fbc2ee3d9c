"""
Load environment variables from AWS Secrets Manager before Django settings are loaded.
Import this module first in manage.py, asgi.py, and wsgi.py so os.environ is populated
before classroom_server.settings evaluates its _env helpers.

Only runs when SECRETS_NAME is set (e.g. "classroom/prod/relay"); local runs use
plain environment variables or a `.env` file instead.
Uses setdefault so existing env vars (e.g. from the task definition) override secret values.
"""
import json
import os

import boto3


def load_secrets(secret_name: str, region: str) -> int:
    """Copy every key of a JSON secret into os.environ. Returns how many were set."""
    client = boto3.client("secretsmanager", region_name=region)
    response = client.get_secret_value(SecretId=secret_name)
    secret_str = response.get("SecretString")
    if not secret_str:
        raise RuntimeError(f"Secret {secret_name!r} has no SecretString")
    data = json.loads(secret_str)
    if not isinstance(data, dict):
        raise RuntimeError(f"Secret {secret_name!r} must be a JSON object")

    applied = 0
    for key, value in data.items():
        if value is not None and key not in os.environ:
            os.environ[key] = str(value)
            applied += 1
    return applied


_secret_name = os.environ.get("SECRETS_NAME", "").strip()
if _secret_name:
    load_secrets(_secret_name, os.environ.get("AWS_REGION", "us-east-2"))
