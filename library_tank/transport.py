from __future__ import annotations

import abc
import contextlib
import json
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator, Mapping

import grpc
import requests

from .errors import TransportConnectionError, TransportError
from .schema import ADD_BOOK_METHOD, decode_add_book_response, encode_add_book_request

if TYPE_CHECKING:
    from .config import ScenarioConfig

LOGGER = logging.getLogger("library_tank.transport")

JSON_HEADERS: dict[str, str] = {"Content-Type": "application/json"}


@dataclass
class TransportResponse:
    status: int | str
    body: Any
    latency_s: float


class Connection(abc.ABC):
    """A client handle owned by a single virtual user."""

    @abc.abstractmethod
    def send(self, payload: dict[str, Any]) -> TransportResponse:
        """Deliver ``payload`` and return the response status.

        Raises :class:`TransportConnectionError` when the target cannot be
        reached and :class:`TransportError` for any other delivery failure.
        """

    @abc.abstractmethod
    def close(self) -> None:
        ...


class Transport(abc.ABC):
    protocol: str = ""

    @contextlib.contextmanager
    def open(self) -> Iterator[Connection]:
        connection = self._connect()
        try:
            yield connection
        finally:
            connection.close()

    @abc.abstractmethod
    def _connect(self) -> Connection:
        ...

    def describe(self) -> str:
        return self.protocol


class HttpConnection(Connection):
    def __init__(self, url: str, timeout_s: float, headers: Mapping[str, str]) -> None:
        self._url = url
        self._timeout_s = timeout_s
        self._headers = dict(headers)
        self._session = requests.Session()

    def send(self, payload: dict[str, Any]) -> TransportResponse:
        started = time.perf_counter()
        try:
            response = self._session.post(
                self._url,
                data=json.dumps(payload),
                headers=self._headers,
                timeout=self._timeout_s,
            )
        except requests.ConnectionError as exc:
            raise TransportConnectionError(f"cannot reach {self._url}: {exc}") from exc
        except requests.RequestException as exc:
            raise TransportError(f"request to {self._url} failed: {exc}") from exc
        latency_s = time.perf_counter() - started

        try:
            body: Any = response.json()
        except ValueError:
            body = response.text
        return TransportResponse(status=response.status_code, body=body, latency_s=latency_s)

    def close(self) -> None:
        self._session.close()


class HttpTransport(Transport):
    """POSTs JSON payloads to a REST endpoint with one session per connection."""

    protocol = "http"

    def __init__(
        self,
        url: str,
        timeout_s: float = 10.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self.url = url
        self.timeout_s = timeout_s
        self.headers = dict(JSON_HEADERS)
        if headers:
            self.headers.update(headers)

    def _connect(self) -> Connection:
        return HttpConnection(self.url, self.timeout_s, self.headers)

    def describe(self) -> str:
        return f"POST {self.url}"


class GrpcConnection(Connection):
    def __init__(self, target: str, method: str, timeout_s: float, plaintext: bool) -> None:
        self._target = target
        self._timeout_s = timeout_s
        if plaintext:
            self._channel = grpc.insecure_channel(target)
        else:
            self._channel = grpc.secure_channel(target, grpc.ssl_channel_credentials())
        self._call = self._channel.unary_unary(
            method,
            request_serializer=encode_add_book_request,
            response_deserializer=decode_add_book_response,
        )

    def send(self, payload: dict[str, Any]) -> TransportResponse:
        started = time.perf_counter()
        try:
            body = self._call(payload, timeout=self._timeout_s)
        except grpc.RpcError as exc:
            code = exc.code()
            if code == grpc.StatusCode.UNAVAILABLE:
                raise TransportConnectionError(
                    f"cannot reach {self._target}: {exc.details()}"
                ) from exc
            return TransportResponse(
                status=code.name,
                body=exc.details(),
                latency_s=time.perf_counter() - started,
            )
        return TransportResponse(
            status=grpc.StatusCode.OK.name,
            body=body,
            latency_s=time.perf_counter() - started,
        )

    def close(self) -> None:
        self._channel.close()


class GrpcTransport(Transport):
    """Invokes ``library.Library/AddBook`` with one channel per connection."""

    protocol = "grpc"

    def __init__(
        self,
        target: str,
        method: str = ADD_BOOK_METHOD,
        timeout_s: float = 10.0,
        plaintext: bool = True,
    ) -> None:
        self.target = target
        self.method = method
        self.timeout_s = timeout_s
        self.plaintext = plaintext

    def _connect(self) -> Connection:
        return GrpcConnection(self.target, self.method, self.timeout_s, self.plaintext)

    def describe(self) -> str:
        return f"{self.method.lstrip('/')} @ {self.target}"


def create_transport(scenario: ScenarioConfig) -> Transport:
    if scenario.protocol == "http":
        transport: Transport = HttpTransport(scenario.target, timeout_s=scenario.timeout_s)
    elif scenario.protocol == "grpc":
        transport = GrpcTransport(scenario.target, timeout_s=scenario.timeout_s)
    else:
        raise ValueError(f"Unknown protocol: {scenario.protocol}")
    LOGGER.debug("Created %s transport for %s", scenario.protocol, transport.describe())
    return transport


__all__ = [
    "Connection",
    "GrpcTransport",
    "HttpTransport",
    "Transport",
    "TransportResponse",
    "create_transport",
]
