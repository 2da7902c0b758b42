"""issue_tracker_shared.aws_clients — Lazy-singleton AWS service clients.

The DynamoDB client is created on first use and cached for subsequent warm
invocations, so cold starts on the in-memory backend never build it.
"""

from __future__ import annotations

from typing import Optional

import boto3
from botocore.config import Config

from issue_tracker_shared import config

_ddb = None


def _get_ddb(region: Optional[str] = None):
    """Get (or create) the DynamoDB client singleton."""
    global _ddb
    if _ddb is None:
        _ddb = boto3.client(
            "dynamodb",
            region_name=region or config.DYNAMODB_REGION,
            config=Config(retries={"max_attempts": 3, "mode": "standard"}),
        )
    return _ddb
