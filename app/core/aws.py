from __future__ import annotations

import boto3

from .settings import S

_session = boto3.session.Session(region_name=S.aws_region or "us-east-1")

ddb = _session.resource("dynamodb", endpoint_url=S.ddb_endpoint_url)


def ddb_client():
    return ddb.meta.client


def sns_client():
    return _session.client("sns")
