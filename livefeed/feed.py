"""
LiveFeed Client - SOAP Transport for GetDataByPostCountAndTimespan

Calls the feed's count-and-timespan operation over HTTP and turns the XML
result into a Batch.

Features:
- SOAP 1.1 envelope built and parsed with lxml
- Short in-request retries with exponential backoff (tenacity) for network
  errors and 5xx responses
- Network/HTTP failures surface as TransportError, malformed responses as
  ParseError; the poll loop treats both as transient

Usage:
    async with LiveFeedClient(endpoint_url=settings.FEED_ENDPOINT_URL) as client:
        batch = await client.fetch(api_key, window)
"""

import logging
import math
from datetime import timedelta
from typing import Optional, Protocol

import httpx
from lxml import etree
from pydantic import ValidationError
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from livefeed.errors import ParseError, TransportError
from livefeed.schemas import Batch, FeedRecord, QueryWindow, format_timestamp, parse_timestamp

logger = logging.getLogger(__name__)

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"
OPERATION = "GetDataByPostCountAndTimespan"

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


class FeedPort(Protocol):
    """Anything that can fetch one window from the feed."""

    async def fetch(self, api_key: str, window: QueryWindow) -> Batch: ...


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (429, 500, 502, 503, 504)
    return isinstance(exc, httpx.TransportError)


def build_envelope(api_key: str, window: QueryWindow, namespace: str) -> bytes:
    """Serialize the SOAP request for one window."""
    envelope = etree.Element(etree.QName(SOAP_ENV_NS, "Envelope"), nsmap={"soap": SOAP_ENV_NS})
    body = etree.SubElement(envelope, etree.QName(SOAP_ENV_NS, "Body"))
    call = etree.SubElement(body, etree.QName(namespace, OPERATION), nsmap={None: namespace})

    for name, value in (
        ("key", api_key),
        ("from", format_timestamp(window.start)),
        ("to", format_timestamp(window.end)),
        ("noOfPosts", str(window.max_count)),
    ):
        etree.SubElement(call, etree.QName(namespace, name)).text = value

    return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")


def _local(element: etree._Element) -> str:
    return etree.QName(element).localname


def _find_result(root: etree._Element) -> etree._Element:
    """Locate the posts element inside the SOAP response."""
    bodies = root.xpath("//*[local-name()='Body']")
    if not bodies:
        # Plain XML document without an envelope
        return root

    body = bodies[0]
    faults = [child for child in body if isinstance(child.tag, str) and _local(child) == "Fault"]
    if faults:
        fault_text = " ".join(faults[0].xpath(".//*[local-name()='faultstring']/text()")) or "unknown fault"
        raise TransportError(f"SOAP fault: {fault_text}")

    results = body.xpath(f".//*[local-name()='{OPERATION}Result']")
    if not results:
        raise ParseError(f"No {OPERATION}Result element in response")

    result = results[0]
    children = [child for child in result if isinstance(child.tag, str)]
    return children[0] if children else result


def parse_batch(content: bytes) -> Batch:
    """
    Parse a feed response into a Batch.

    The posts element carries ``noOfPosts``, ``lastPost`` and ``lastPostMs``
    attributes and one ``post`` child per record with a ``url`` child.

    Raises:
        ParseError: If the document or its attributes are malformed
        TransportError: If the response is a SOAP fault
    """
    try:
        root = etree.fromstring(content, parser=_PARSER)
    except etree.XMLSyntaxError as e:
        raise ParseError(f"Invalid XML in feed response: {e}") from e

    data = _find_result(root)

    try:
        count = int(data.attrib["noOfPosts"])
        if count < 0:
            raise ValueError(f"negative noOfPosts {count}")
        last_record_at = None
        last_record_offset_ms = None
        if count > 0:
            last_record_at = parse_timestamp(data.attrib["lastPost"])
            last_record_offset_ms = float(data.attrib["lastPostMs"])
            if not math.isfinite(last_record_offset_ms):
                raise ValueError(f"non-finite lastPostMs {data.attrib['lastPostMs']}")
            # The next cursor is derived from these two; it has to be representable
            _ = last_record_at + timedelta(milliseconds=last_record_offset_ms + 1)
    except KeyError as e:
        raise ParseError(f"Missing attribute in feed response: {e}") from e
    except (ValueError, OverflowError) as e:
        raise ParseError(f"Invalid attribute in feed response: {e}") from e

    records = []
    for post in data.xpath("./*[local-name()='post']"):
        url = post.xpath("string(./*[local-name()='url'])").strip()
        if not url:
            continue
        stamp = post.xpath("string(./*[local-name()='timestamp'])").strip()
        try:
            timestamp = parse_timestamp(stamp) if stamp else None
        except ValueError as e:
            raise ParseError(f"Invalid post timestamp {stamp!r}") from e
        records.append(FeedRecord(url=url, timestamp=timestamp))

    try:
        return Batch(
            count=count,
            records=tuple(records),
            last_record_at=last_record_at,
            last_record_offset_ms=last_record_offset_ms,
            payload=etree.tostring(data, xml_declaration=True, encoding="utf-8"),
        )
    except ValidationError as e:
        raise ParseError(f"Inconsistent feed response: {e}") from e


class LiveFeedClient:
    """Async SOAP client for the feed's count-and-timespan operation."""

    def __init__(
        self,
        endpoint_url: str,
        *,
        namespace: str = "http://tempuri.org/",
        timeout_seconds: float = 60.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        user_agent: str = "livefeed-poller/0.1.0",
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            endpoint_url: SOAP endpoint URL
            namespace: Namespace of the operation element
            timeout_seconds: HTTP timeout per attempt
            max_retries: Extra attempts for retryable failures
            backoff_seconds: Base of the exponential backoff between attempts
            user_agent: User-Agent header value
            http_client: Preconfigured httpx client (not closed by this client)
        """
        self.endpoint_url = endpoint_url
        self.namespace = namespace
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"User-Agent": user_agent},
        )

    async def __aenter__(self) -> "LiveFeedClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _post(self, envelope: bytes) -> bytes:
        response = await self._client.post(
            self.endpoint_url,
            content=envelope,
            headers={
                "Content-Type": "text/xml; charset=utf-8",
                "SOAPAction": f'"{self.namespace}{OPERATION}"',
            },
        )
        # SOAP faults come back as 500 with a fault body
        if response.status_code == 500 and b"Fault" in response.content:
            return response.content
        response.raise_for_status()
        return response.content

    async def fetch(self, api_key: str, window: QueryWindow) -> Batch:
        """
        Fetch up to ``window.max_count`` posts in [window.start, window.end).

        Raises:
            TransportError: On network failures, HTTP errors or SOAP faults
            ParseError: If the response can't be parsed
        """
        envelope = build_envelope(api_key, window, self.namespace)
        backoff = self.backoff_seconds

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(_is_retryable),
                stop=stop_after_attempt(self.max_retries + 1),
                wait=wait_exponential(multiplier=backoff, min=backoff, max=backoff * 5),
                reraise=True,
            ):
                with attempt:
                    content = await self._post(envelope)
        except httpx.HTTPError as e:
            raise TransportError(f"Feed request failed: {type(e).__name__}: {e}") from e

        batch = parse_batch(content)
        logger.debug(
            "Feed window fetched",
            extra={
                "from": format_timestamp(window.start),
                "to": format_timestamp(window.end),
                "count": batch.count,
            },
        )
        return batch
