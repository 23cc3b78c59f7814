"""Single-attempt email delivery through the SOAP mail gateway."""

from __future__ import annotations

import asyncio
import logging
import socket
import xml.etree.ElementTree as ElementTree
from dataclasses import dataclass
from enum import Enum
from typing import Protocol
from xml.sax.saxutils import escape

import httpx

from pulse.core.config import Settings

logger = logging.getLogger(__name__)


class TransportFailureKind(str, Enum):
    """Stable failure categories used for user facing diagnostics."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    RESET = "reset"
    OTHER = "other"


DIAGNOSTICS: dict[TransportFailureKind, str] = {
    TransportFailureKind.TIMEOUT: "Email service timed out: the mail gateway did not respond in time",
    TransportFailureKind.UNREACHABLE: "Email service unreachable: connection refused or gateway host not found",
    TransportFailureKind.RESET: "Email service connection reset: the gateway dropped the connection",
    TransportFailureKind.OTHER: "Email sending failed",
}


class TransportError(Exception):
    """A classified mail gateway failure; never raised past the dispatch engine."""

    kind = TransportFailureKind.OTHER

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or DIAGNOSTICS[self.kind])
        self.detail = detail

    @property
    def diagnostic(self) -> str:
        base = DIAGNOSTICS[self.kind]
        if self.kind is TransportFailureKind.OTHER and self.detail:
            return f"{base}: {self.detail}"
        return base


class TransportTimeoutError(TransportError):
    kind = TransportFailureKind.TIMEOUT


class TransportUnreachableError(TransportError):
    kind = TransportFailureKind.UNREACHABLE


class TransportResetError(TransportError):
    kind = TransportFailureKind.RESET


class TransportOtherError(TransportError):
    kind = TransportFailureKind.OTHER


_ERRORS_BY_KIND: dict[TransportFailureKind, type[TransportError]] = {
    TransportFailureKind.TIMEOUT: TransportTimeoutError,
    TransportFailureKind.UNREACHABLE: TransportUnreachableError,
    TransportFailureKind.RESET: TransportResetError,
    TransportFailureKind.OTHER: TransportOtherError,
}

_RESET_MARKERS = ("reset", "broken pipe", "server disconnected", "connection aborted")
_UNREACHABLE_MARKERS = ("refused", "getaddrinfo", "name or service not known", "nodename", "no route to host")


def classify_failure(exc: BaseException) -> TransportFailureKind:
    """Map an exception raised while talking to the gateway to a failure category."""

    if isinstance(exc, TransportError):
        return exc.kind
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError, socket.timeout)):
        return TransportFailureKind.TIMEOUT
    if isinstance(exc, (httpx.RemoteProtocolError, ConnectionResetError, BrokenPipeError)):
        return TransportFailureKind.RESET
    if isinstance(exc, (httpx.ConnectError, ConnectionRefusedError, socket.gaierror)):
        return TransportFailureKind.UNREACHABLE
    if isinstance(exc, (httpx.TransportError, OSError)):
        message = str(exc).lower()
        if any(marker in message for marker in _RESET_MARKERS):
            return TransportFailureKind.RESET
        if any(marker in message for marker in _UNREACHABLE_MARKERS):
            return TransportFailureKind.UNREACHABLE
    return TransportFailureKind.OTHER


def as_transport_error(exc: BaseException) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    kind = classify_failure(exc)
    return _ERRORS_BY_KIND[kind](str(exc) or type(exc).__name__)


@dataclass(frozen=True, slots=True)
class GatewayConfig:
    """Location and timeouts of the SOAP mail service."""

    wsdl_url: str
    namespace: str = "http://tempuri.org/"
    contract: str = "IService"
    operation: str = "SendMailHTML"
    connect_timeout: float = 30.0
    send_timeout: float = 60.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "GatewayConfig":
        return cls(
            wsdl_url=settings.mail_gateway_url,
            namespace=settings.mail_gateway_namespace,
            contract=settings.mail_gateway_contract,
            connect_timeout=settings.mail_connect_timeout,
            send_timeout=settings.mail_send_timeout,
        )

    @property
    def service_url(self) -> str:
        return self.wsdl_url.split("?", 1)[0]

    @property
    def soap_action(self) -> str:
        return f"{self.namespace.rstrip('/')}/{self.contract}/{self.operation}"


class MailHandle(Protocol):
    """A live session with the mail gateway."""

    async def send(self, to: str, subject: str, html_body: str) -> None:
        ...

    async def close(self) -> None:
        ...


class MailGateway(Protocol):
    async def open(self) -> MailHandle:
        ...


def build_envelope(config: GatewayConfig, to: str, subject: str, html_body: str) -> str:
    """Return the SOAP 1.1 request body for one ``SendMailHTML`` call."""

    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">'
        "<soap:Body>"
        f'<{config.operation} xmlns="{escape(config.namespace)}">'
        f"<to>{escape(to)}</to>"
        f"<subject>{escape(subject)}</subject>"
        f"<body>{escape(html_body)}</body>"
        f"</{config.operation}>"
        "</soap:Body>"
        "</soap:Envelope>"
    )


def _fault_string(payload: str) -> str | None:
    try:
        root = ElementTree.fromstring(payload)
    except ElementTree.ParseError:
        return None
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] in ("faultstring", "Text") and element.text:
            return element.text.strip()
    return None


class SoapMailHandle:
    def __init__(self, client: httpx.AsyncClient, config: GatewayConfig) -> None:
        self._client = client
        self._config = config

    async def send(self, to: str, subject: str, html_body: str) -> None:
        response = await self._client.post(
            self._config.service_url,
            content=build_envelope(self._config, to, subject, html_body).encode("utf-8"),
            headers={
                "Content-Type": "text/xml; charset=utf-8",
                "SOAPAction": f'"{self._config.soap_action}"',
            },
        )
        if response.status_code >= 400:
            fault = _fault_string(response.text) or response.reason_phrase
            raise TransportOtherError(f"gateway returned HTTP {response.status_code}: {fault}")
        fault = _fault_string(response.text) if "Fault" in response.text else None
        if fault:
            raise TransportOtherError(f"gateway fault: {fault}")

    async def close(self) -> None:
        await self._client.aclose()


class SoapMailGateway:
    """Mail gateway speaking SOAP over HTTP with ``httpx``.

    Opening a handle downloads the service WSDL, which doubles as the
    reachability check the gateway requires before any send.
    """

    def __init__(self, config: GatewayConfig, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._config = config
        self._transport = transport

    async def open(self) -> SoapMailHandle:
        client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._config.send_timeout, connect=self._config.connect_timeout),
            transport=self._transport,
        )
        try:
            response = await client.get(self._config.wsdl_url, timeout=self._config.connect_timeout)
            if response.status_code >= 400:
                raise TransportOtherError(f"WSDL request returned HTTP {response.status_code}")
            if "definitions" not in response.text:
                raise TransportOtherError("gateway did not return a WSDL document")
        except BaseException:
            await client.aclose()
            raise
        return SoapMailHandle(client, self._config)


class MailTransport:
    """Single-attempt operations against a :class:`MailGateway`.

    Every failure leaves this class as a :class:`TransportError`; retrying is
    the caller's business.
    """

    def __init__(self, gateway: MailGateway) -> None:
        self._gateway = gateway

    async def connect(self) -> MailHandle:
        try:
            return await self._gateway.open()
        except Exception as exc:
            raise as_transport_error(exc) from exc

    async def send(self, handle: MailHandle, to: str, subject: str, html_body: str) -> None:
        try:
            await handle.send(to, subject, html_body)
        except Exception as exc:
            raise as_transport_error(exc) from exc

    async def release(self, handle: MailHandle) -> None:
        try:
            await handle.close()
        except Exception:
            # The send outcome is already decided; a failed close only leaks a connection.
            logger.warning("Failed to close mail gateway handle", exc_info=True)
