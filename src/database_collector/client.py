"""Remote-write client for sending time series to Amazon Managed Prometheus."""

import logging
import threading
from typing import Any, Optional

import boto3
import httpx
import snappy
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import RefreshableCredentials
from botocore.exceptions import BotoCoreError, ClientError

from . import __version__, wire
from .encoder import RemoteWriteBatch
from .errors import SendError

logger = logging.getLogger(__name__)

REMOTE_WRITE_VERSION = "0.1.0"


class RemoteWriteClient:
    """
    Client for the Prometheus remote-write protocol with AWS SigV4 signing.

    Each ``send`` is independent and best effort: the batch is serialized,
    snappy-compressed, signed and POSTed once. Any failure raises
    ``SendError`` and the batch is dropped; nothing is retried.
    """

    def __init__(
        self,
        url: str,
        region: str,
        service: str = "aps",
        timeout: float = 30,
        role_arn: Optional[str] = None,
        role_session_name: str = "database-collector",
        session: Optional[boto3.Session] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.region = region
        self.service = service
        self.timeout = timeout
        self.role_arn = role_arn
        self.role_session_name = role_session_name
        self._session = session
        self._client = http_client
        self._credentials = None
        self._lock = threading.Lock()

    def _get_headers(self) -> dict:
        """Fixed remote-write request headers."""
        return {
            "Content-Type": "application/x-protobuf",
            "Content-Encoding": "snappy",
            "X-Prometheus-Remote-Write-Version": REMOTE_WRITE_VERSION,
            "User-Agent": f"database-collector/{__version__}",
        }

    def _get_client(self) -> httpx.Client:
        """Get or create HTTP client."""
        with self._lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.Client(timeout=self.timeout)
            return self._client

    def _get_session(self) -> boto3.Session:
        if self._session is None:
            self._session = boto3.Session(region_name=self.region)
        return self._session

    def _get_credentials(self):
        """Credentials for signing: the session's own, or an assumed role's."""
        with self._lock:
            if self._credentials is None:
                if self.role_arn:
                    self._credentials = self._assume_role_credentials()
                else:
                    self._credentials = self._get_session().get_credentials()
            if self._credentials is None:
                raise SendError("No AWS credentials available for signing")
            return self._credentials

    def _assume_role_credentials(self) -> RefreshableCredentials:
        sts = self._get_session().client("sts", region_name=self.region)

        def refresh() -> dict[str, Any]:
            logger.debug(f"Assuming role {self.role_arn}")
            response = sts.assume_role(RoleArn=self.role_arn, RoleSessionName=self.role_session_name)
            creds = response["Credentials"]
            return {
                "access_key": creds["AccessKeyId"],
                "secret_key": creds["SecretAccessKey"],
                "token": creds["SessionToken"],
                "expiry_time": creds["Expiration"].isoformat(),
            }

        try:
            return RefreshableCredentials.create_from_metadata(
                metadata=refresh(),
                refresh_using=refresh,
                method="sts-assume-role",
            )
        except (BotoCoreError, ClientError) as e:
            raise SendError(f"Failed to assume role {self.role_arn}: {e}") from e

    def _sign(self, body: bytes) -> dict:
        """Sign a POST of ``body`` and return the full header set."""
        try:
            credentials = self._get_credentials().get_frozen_credentials()
            request = AWSRequest(method="POST", url=self.url, data=body, headers=self._get_headers())
            SigV4Auth(credentials, self.service, self.region).add_auth(request)
        except (BotoCoreError, ClientError) as e:
            raise SendError(f"Failed to sign the request: {e}") from e
        return dict(request.headers.items())

    def send(self, batch: RemoteWriteBatch) -> Optional[httpx.Response]:
        """Send a batch to the remote-write endpoint.

        Args:
            batch: Encoded time series

        Returns:
            The response, or None if the batch was empty

        Raises:
            SendError: On serialization, signing or network failure, or a
                non-success response (the body is kept for diagnostics)
        """
        if not batch.timeseries:
            return None

        try:
            body = snappy.compress(wire.serialize(batch))
        except Exception as e:
            raise SendError(f"Failed to serialize batch: {e}") from e

        headers = self._sign(body)
        client = self._get_client()

        try:
            response = client.post(self.url, content=body, headers=headers)
        except httpx.TimeoutException as e:
            raise SendError(f"Timeout sending to remote write endpoint: {e}") from e
        except httpx.HTTPError as e:
            raise SendError(f"Request to remote write endpoint failed: {e}") from e

        if not response.is_success:
            raise SendError("Remote write request rejected", status_code=response.status_code, body=response.text)

        logger.debug(f"Sent {len(batch)} series ({batch.sample_count} samples), status {response.status_code}")
        return response

    def close(self):
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None
