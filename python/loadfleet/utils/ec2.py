"""
loadfleet/utils/ec2.py

Provides an Ec2Client for the EC2 Query API, using AWS Signature Version 4
authentication with aiohttp.

Features:
    - describe_instances (by ids and/or filters, follows pagination)
    - describe_instance_status (run-state + status checks, all states)
    - run_instances (named security group or security group id + subnet)
    - create_tags (one batch call for many ids)
    - terminate_instances (one batch call for many ids)
"""

from __future__ import annotations

import datetime
import hashlib
import hmac
import urllib.parse
import xml.etree.ElementTree as ET
from types import TracebackType
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Type, TypeVar

import aiohttp

from loadfleet.models.credentials import AWSApiKey
from loadfleet.models.fleet import (
    FleetTag,
    LaunchParams,
    NodeHandle,
    NodeHealth,
    NodeState,
    NodeStatus,
    SecurityGroupIdLaunch,
)
from loadfleet.utils.async_retry import async_retry

T = TypeVar("T", bound=BaseException)

API_VERSION = "2016-11-15"
RETRIES = 3


class Ec2ApiError(RuntimeError):
    """An EC2 request failed.

    Attributes:
        status (int): HTTP status of the response.
        code (Optional[str]): AWS error code, e.g. "InvalidInstanceID.NotFound".
    """

    def __init__(self, message: str, status: int, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


class Ec2ServerError(Ec2ApiError):
    """5xx from EC2; safe to retry for idempotent calls."""


# -------------------------------------------------------------------------
# Request parameter builders
# -------------------------------------------------------------------------
def _indexed(prefix: str, values: Iterable[str]) -> Dict[str, str]:
    return {f"{prefix}.{i}": v for i, v in enumerate(values, start=1)}


def filter_params(filters: Mapping[str, Sequence[str]]) -> Dict[str, str]:
    """Render {name: [values]} as Filter.N.Name / Filter.N.Value.M parameters."""
    params: Dict[str, str] = {}
    for n, (name, values) in enumerate(filters.items(), start=1):
        params[f"Filter.{n}.Name"] = name
        params.update(_indexed(f"Filter.{n}.Value", values))
    return params


def run_instances_params(
    launch: LaunchParams, instance_type: str, count: int
) -> Dict[str, str]:
    params = {
        "ImageId": launch.image_id,
        "InstanceType": instance_type,
        "MinCount": str(count),
        "MaxCount": str(count),
        "KeyName": launch.key_pair_name,
    }
    if isinstance(launch, SecurityGroupIdLaunch):
        params["SecurityGroupId.1"] = launch.security_group_id
        params["SubnetId"] = launch.subnet_id
    else:
        params["SecurityGroup.1"] = launch.security_group
    return params


# -------------------------------------------------------------------------
# Response parsing
# -------------------------------------------------------------------------
def _strip_namespaces(root: ET.Element) -> ET.Element:
    for elem in root.iter():
        if isinstance(elem.tag, str) and "}" in elem.tag:
            elem.tag = elem.tag.split("}", 1)[1]
    return root


def _parse_xml(body: str) -> ET.Element:
    return _strip_namespaces(ET.fromstring(body))


def _text(elem: Optional[ET.Element], path: str, default: str = "") -> str:
    if elem is None:
        return default
    found = elem.find(path)
    if found is None or found.text is None:
        return default
    return found.text.strip()


def _state(value: str) -> NodeState:
    try:
        return NodeState(value)
    except ValueError:
        return NodeState.PENDING


def _health(value: str) -> NodeHealth:
    try:
        return NodeHealth(value)
    except ValueError:
        return NodeHealth.NOT_APPLICABLE


def _parse_instance(item: ET.Element) -> NodeHandle:
    tags = {
        _text(tag_item, "key"): _text(tag_item, "value")
        for tag_item in item.findall("tagSet/item")
    }
    return NodeHandle(
        instance_id=_text(item, "instanceId"),
        state=_state(_text(item, "instanceState/name")),
        instance_type=_text(item, "instanceType"),
        public_dns_name=_text(item, "dnsName"),
        private_ip_address=_text(item, "privateIpAddress"),
        tags=tags,
    )


def parse_describe_instances(body: str) -> Tuple[List[NodeHandle], Optional[str]]:
    """Returns the instances across all reservations plus the next page token."""
    root = _parse_xml(body)
    nodes = [
        _parse_instance(item)
        for reservation in root.findall("reservationSet/item")
        for item in reservation.findall("instancesSet/item")
    ]
    return nodes, _text(root, "nextToken") or None


def parse_run_instances(body: str) -> List[NodeHandle]:
    root = _parse_xml(body)
    return [_parse_instance(item) for item in root.findall("instancesSet/item")]


def parse_instance_status(body: str) -> Tuple[List[NodeStatus], Optional[str]]:
    root = _parse_xml(body)
    statuses = [
        NodeStatus(
            instance_id=_text(item, "instanceId"),
            state=_state(_text(item, "instanceState/name")),
            health=_health(_text(item, "instanceStatus/status")),
        )
        for item in root.findall("instanceStatusSet/item")
    ]
    return statuses, _text(root, "nextToken") or None


def parse_error(body: str) -> Tuple[Optional[str], str]:
    """Pull (code, message) out of an EC2 error document."""
    try:
        root = _parse_xml(body)
    except ET.ParseError:
        return None, body.strip()
    error = root.find(".//Error")
    return (_text(error, "Code") or None), (_text(error, "Message") or body.strip())


class Ec2Client:
    """
    An asynchronous client for the EC2 Query API (SigV4-signed POSTs).

    The client reuses a single aiohttp session and retries read-only and
    idempotent calls on 5xx responses via the @async_retry decorator. Instance
    creation is never retried.
    """

    _SERVICE = "ec2"

    def __init__(
        self,
        credentials: AWSApiKey,
        *,
        endpoint: str = "https://ec2.us-east-1.amazonaws.com",
        region: str = "us-east-1",
        total_timeout: float = 60.0,
    ) -> None:
        """
        Initialize the Ec2Client.

        Args:
            credentials (AWSApiKey): Keys used to sign each request.
            endpoint (str): EC2 endpoint URL.
            region (str): Region the endpoint belongs to (part of the signature scope).
            total_timeout (float, optional): Total request timeout in seconds.
        """
        self._credentials = credentials
        self._endpoint = endpoint.rstrip("/") + "/"
        self._region = region
        self._timeout = aiohttp.ClientTimeout(total=total_timeout)
        self._closed = False
        self._session: Optional[aiohttp.ClientSession] = None
        self._signing_key_cache: Dict[str, bytes] = {}

    async def __aenter__(self) -> Ec2Client:
        self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[T]],
        exc_val: Optional[T],
        exc_tb: Optional[TracebackType],
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the internal aiohttp session if not already closed."""
        if not self._closed and self._session is not None:
            await self._session.close()
            self._closed = True

    # -------------------------------------------------------------------------
    # API calls
    # -------------------------------------------------------------------------
    @async_retry(retries=RETRIES, retry_on=(Ec2ServerError, aiohttp.ClientError))
    async def describe_instances(
        self,
        ids: Optional[Sequence[str]] = None,
        filters: Optional[Mapping[str, Sequence[str]]] = None,
    ) -> List[NodeHandle]:
        base: Dict[str, str] = {}
        if ids:
            base.update(_indexed("InstanceId", ids))
        if filters:
            base.update(filter_params(filters))

        nodes: List[NodeHandle] = []
        token: Optional[str] = None
        while True:
            params = dict(base, NextToken=token) if token else base
            body = await self._call("DescribeInstances", params)
            page, token = parse_describe_instances(body)
            nodes.extend(page)
            if not token:
                return nodes

    @async_retry(retries=RETRIES, retry_on=(Ec2ServerError, aiohttp.ClientError))
    async def describe_instance_status(self, ids: Sequence[str]) -> List[NodeStatus]:
        base = dict(_indexed("InstanceId", ids), IncludeAllInstances="true")
        statuses: List[NodeStatus] = []
        token: Optional[str] = None
        while True:
            params = dict(base, NextToken=token) if token else base
            body = await self._call("DescribeInstanceStatus", params)
            page, token = parse_instance_status(body)
            statuses.extend(page)
            if not token:
                return statuses

    async def run_instances(
        self, launch: LaunchParams, instance_type: str, count: int
    ) -> List[NodeHandle]:
        body = await self._call(
            "RunInstances", run_instances_params(launch, instance_type, count)
        )
        return parse_run_instances(body)

    @async_retry(retries=RETRIES, retry_on=(Ec2ServerError, aiohttp.ClientError))
    async def create_tags(self, ids: Sequence[str], tag: FleetTag) -> None:
        params = _indexed("ResourceId", ids)
        params.update({"Tag.1.Key": tag.key, "Tag.1.Value": tag.value})
        await self._call("CreateTags", params)

    @async_retry(retries=RETRIES, retry_on=(Ec2ServerError, aiohttp.ClientError))
    async def terminate_instances(self, ids: Sequence[str]) -> None:
        await self._call("TerminateInstances", _indexed("InstanceId", ids))

    # -------------------------------------------------------------------------
    # Internal Logic
    # -------------------------------------------------------------------------
    async def _call(self, action: str, params: Mapping[str, str]) -> str:
        """
        POST one signed Query API action and return the response body.

        Raises:
            Ec2ServerError: On 5xx (retried by the idempotent callers).
            Ec2ApiError: On any other non-200 status.
        """
        if self._session is None or self._closed:
            raise RuntimeError("Client session is not available or already closed.")

        form = {"Action": action, "Version": API_VERSION, **params}
        body = urllib.parse.urlencode(sorted(form.items())).encode("utf-8")
        headers = {
            **self._sign_request_v4("POST", self._endpoint, body),
            "Content-Type": "application/x-www-form-urlencoded; charset=utf-8",
        }

        async with self._session.post(
            self._endpoint, headers=headers, data=body
        ) as response:
            resp_text = await response.text()
            status = response.status

        if status == 200:
            return resp_text
        code, message = parse_error(resp_text)
        error_cls = Ec2ServerError if 500 <= status < 600 else Ec2ApiError
        raise error_cls(
            f"EC2 {action} failed: status={status}, code={code}, message={message}",
            status,
            code,
        )

    def _sign_request_v4(
        self,
        method: str,
        url: str,
        body: bytes,
    ) -> Dict[str, str]:
        """
        Sign a request using AWS Signature Version 4.
        """
        parsed = urllib.parse.urlparse(url)
        host = parsed.netloc
        canonical_uri = parsed.path or "/"
        canonical_query = parsed.query

        now_utc = datetime.datetime.now(datetime.timezone.utc)
        amz_date = now_utc.strftime("%Y%m%dT%H%M%SZ")
        date_stamp = now_utc.strftime("%Y%m%d")

        payload_hash = hashlib.sha256(body).hexdigest()
        header_values = {
            "host": host,
            "x-amz-content-sha256": payload_hash,
            "x-amz-date": amz_date,
        }
        if self._credentials.session_token:
            header_values["x-amz-security-token"] = self._credentials.session_token

        signed_names = sorted(header_values)
        canonical_headers = "".join(f"{k}:{header_values[k]}\n" for k in signed_names)
        signed_headers = ";".join(signed_names)

        canonical_request = (
            f"{method}\n"
            f"{canonical_uri}\n"
            f"{canonical_query}\n"
            f"{canonical_headers}\n"
            f"{signed_headers}\n"
            f"{payload_hash}"
        )
        cr_hash = hashlib.sha256(canonical_request.encode("utf-8")).hexdigest()

        algorithm = "AWS4-HMAC-SHA256"
        credential_scope = f"{date_stamp}/{self._region}/{self._SERVICE}/aws4_request"
        string_to_sign = f"{algorithm}\n{amz_date}\n{credential_scope}\n{cr_hash}"

        signing_key = self._get_signing_key(date_stamp)
        signature = hmac.new(
            signing_key, string_to_sign.encode("utf-8"), hashlib.sha256
        ).hexdigest()

        authorization_header = (
            f"{algorithm} Credential={self._credentials.access_key_id}/{credential_scope}, "
            f"SignedHeaders={signed_headers}, "
            f"Signature={signature}"
        )

        headers = {
            "Host": host,
            "X-Amz-Date": amz_date,
            "X-Amz-Content-Sha256": payload_hash,
            "Authorization": authorization_header,
        }
        if self._credentials.session_token:
            headers["X-Amz-Security-Token"] = self._credentials.session_token
        return headers

    def _get_signing_key(self, date_stamp: str) -> bytes:
        """
        Retrieve or derive the SigV4 signing key for the given date.
        """
        cache_key = f"{date_stamp}-{self._region}-{self._SERVICE}"
        if cache_key in self._signing_key_cache:
            return self._signing_key_cache[cache_key]

        def _sign(key: bytes, msg: str) -> bytes:
            return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()

        secret_bytes = self._credentials.secret_access_key.encode("utf-8")
        k_date = _sign(b"AWS4" + secret_bytes, date_stamp)
        k_region = _sign(k_date, self._region)
        k_service = _sign(k_region, self._SERVICE)
        k_signing = _sign(k_service, "aws4_request")

        self._signing_key_cache[cache_key] = k_signing
        return k_signing
