"""
Event delivery: normalization plus the two subscription modes.

- EventListener: push style, one listener registered on the client
- PullPointSubscription: subscribe, poll on a timer, unsubscribe

Both end when the connection leaves CONNECTED.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import xmltodict
from lxml import etree

from camlink.api.onvif_client import subscription_address
from camlink.core.errors import CamlinkError, NotConnectedError, ParseError, SubscriptionError
from camlink.core.operations import (
    CreatePullPointArgs, Operation, PullMessagesArgs, SubscriptionArgs,
)
from camlink.core.orchestrator import CallRequest
from camlink.models.device import ConnectionState, EventItem, EventRecord

logger = logging.getLogger(__name__)

EventCallback = Callable[[EventRecord], None]


def _get(obj: Any, name: str) -> Any:
    """Case-insensitive field lookup on dicts and zeep objects."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        if name in obj:
            return obj[name]
        lowered = name.lower()
        for key, value in obj.items():
            if isinstance(key, str) and key.lower() == lowered:
                return value
        return None
    return getattr(obj, name, None)


def _strip_prefixes(node: Any) -> Any:
    """Drop namespace prefixes from element names ('tt:Data' -> 'Data')."""
    if isinstance(node, dict):
        stripped = {}
        for key, value in node.items():
            if isinstance(key, str) and not key.startswith("@") and ":" in key:
                key = key.split(":")[-1]
            stripped[key] = _strip_prefixes(value)
        return stripped
    if isinstance(node, list):
        return [_strip_prefixes(item) for item in node]
    return node


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _attribute(item: Any, name: str) -> Optional[str]:
    value = _get(item, f"@{name}")
    if value is None:
        # xml2js-style attribute bag
        value = _get(_get(item, "$"), name)
    if value is None:
        value = _get(item, name)
    return value


def clean_topic(topic: str) -> str:
    """Strip namespace prefixes from every topic segment."""
    return "/".join(part.split(":")[-1] for part in topic.strip().split("/"))


def _topic_text(topic: Any) -> str:
    if topic is None:
        return ""
    if isinstance(topic, str):
        return topic
    for key in ("_value_1", "_"):
        value = _get(topic, key)
        if isinstance(value, str):
            return value
    return ""


def _message_dict(message: Any) -> Dict[str, Any]:
    """Return the tt:Message content as a dict, whatever shape it arrived in."""
    payload = message
    if not isinstance(payload, (dict, str, bytes)) and not etree.iselement(payload):
        payload = _get(message, "_value_1")

    if etree.iselement(payload):
        payload = etree.tostring(payload)

    if isinstance(payload, (str, bytes)):
        try:
            payload = xmltodict.parse(payload)
        except Exception as e:
            raise ParseError(f"Malformed event XML: {e}") from e

    if not isinstance(payload, dict):
        raise ParseError("Event has no message payload")

    payload = _strip_prefixes(payload)

    # Unwrap nested Message elements (NotificationMessage/Message/Message)
    while isinstance(_get(payload, "Message"), dict):
        payload = _get(payload, "Message")
    return payload


def normalize_event(notification: Any) -> EventRecord:
    """
    Flatten an ONVIF NotificationMessage into an EventRecord.

    Accepts zeep NotificationMessage objects, lxml elements, XML text and
    pre-parsed dicts.

    Raises:
        ParseError: when the notification has no readable message
    """
    try:
        topic = clean_topic(_topic_text(_get(notification, "Topic")))
        message = _message_dict(_get(notification, "Message"))

        record = EventRecord(
            topic=topic,
            time=_attribute(message, "UtcTime"),
            property=_attribute(message, "PropertyOperation"),
        )

        source_items = _as_list(_get(_get(message, "Source"), "SimpleItem"))
        if source_items:
            first = source_items[0]
            record.source = EventItem(name=_attribute(first, "Name"), value=_attribute(first, "Value"))

        data = _get(message, "Data")
        simple_items = _as_list(_get(data, "SimpleItem"))
        if simple_items:
            record.data = [
                EventItem(name=_attribute(item, "Name"), value=_attribute(item, "Value"))
                for item in simple_items
            ]
        elif _get(data, "ElementItem") is not None:
            record.data = _get(data, "ElementItem")

        return record
    except ParseError:
        raise
    except (AttributeError, TypeError, ValueError) as e:
        raise ParseError(f"Failed to parse event: {e}") from e


def _notifications(payload: Any) -> List[Any]:
    return _as_list(_get(payload, "NotificationMessage"))


class EventListener:
    """
    Push-style event delivery: one listener on the connected client.

    start() while already started raises SubscriptionError and leaves the
    existing listener in place.
    """

    def __init__(self, connection):
        self._connection = connection
        self._listener: Optional[Callable[[Any], None]] = None
        self._client = None
        self._connection.add_status_listener(self._on_status)

    @property
    def active(self) -> bool:
        return self._listener is not None

    def start(self, callback: EventCallback):
        if self._listener is not None:
            raise SubscriptionError("Already listening for events", address=self._connection.address)

        client = self._connection.client
        if client is None or self._connection.state is not ConnectionState.CONNECTED:
            raise NotConnectedError("Not connected to device", address=self._connection.address)

        def _on_event(notification: Any):
            try:
                record = normalize_event(notification)
            except ParseError as e:
                logger.warning(f"Dropping malformed event from {self._connection.address}: {e}")
                return

            try:
                callback(record)
            except Exception:
                logger.exception(f"Event callback failed for {self._connection.address}")

        client.add_event_listener(_on_event)
        self._listener = _on_event
        self._client = client
        logger.info(f"Listening for events on {self._connection.address}")

    def stop(self):
        if self._listener is None:
            return

        listener, client = self._listener, self._client
        self._listener = None
        self._client = None

        try:
            client.remove_event_listener(listener)
        except Exception as e:
            logger.debug(f"Ignoring listener removal failure on {self._connection.address}: {e}")
        logger.info(f"Stopped listening for events on {self._connection.address}")

    def close(self):
        self.stop()
        self._connection.remove_status_listener(self._on_status)

    def _on_status(self, state: ConnectionState):
        if state is not ConnectionState.CONNECTED:
            self.stop()


class PullPointSubscription:
    """
    Pull-point event delivery.

    subscribe() creates the remote subscription and starts a poll loop driven
    by loop.call_later. Only one poll is outstanding at a time; a failed poll
    is logged and the loop carries on. unsubscribe() cancels the pending
    timer and removes the remote subscription best-effort.

    Every teardown starts a new generation. A subscribe() or poll that
    completes after a teardown belongs to an older generation and is
    discarded; a subscription created that way is removed again remotely.
    """

    def __init__(self, connection, interval: float = 1.0, message_limit: int = 10,
                 pull_timeout: str = "PT5S", call_timeout: Optional[float] = None,
                 termination_time: Optional[str] = None):
        self._connection = connection
        self.interval = interval
        self.message_limit = message_limit
        self.pull_timeout = pull_timeout
        self.call_timeout = call_timeout
        self.termination_time = termination_time

        self.address: Optional[str] = None
        self.active = False
        self.failures = 0

        self._callback: Optional[EventCallback] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._polling = False
        self._subscribing = False
        self._generation = 0

        self._connection.add_status_listener(self._on_status)

    async def subscribe(self, callback: EventCallback) -> str:
        """
        Create the remote subscription and start polling. Returns its address.

        Raises:
            SubscriptionError: already subscribed, or unsubscribed/disconnected
                while the subscription was being created
        """
        if self.active or self._subscribing:
            raise SubscriptionError("Pull-point subscription already active", address=self._connection.address)

        generation = self._generation
        self._subscribing = True
        try:
            result = await self._connection.orchestrator.call(CallRequest(
                Operation.CREATE_PULL_POINT_SUBSCRIPTION,
                CreatePullPointArgs(self.termination_time),
            ))
            address = subscription_address(result.data)
        finally:
            self._subscribing = False

        if generation != self._generation or self._connection.state is not ConnectionState.CONNECTED:
            logger.info(f"Pull-point subscription on {self._connection.address} ended while being created, "
                        f"removing {address}")
            await self._remove(address)
            raise SubscriptionError("Subscription ended while being created", address=self._connection.address)

        self.address = address
        self.active = True
        self.failures = 0
        self._callback = callback
        logger.info(f"Pull-point subscription created on {self._connection.address}: {address}")

        self._schedule(0)
        return address

    async def unsubscribe(self):
        """Stop polling and remove the remote subscription. Never raises."""
        address = self.address
        self._teardown()

        if address is not None:
            await self._remove(address)

    async def _remove(self, address: str):
        if self._connection.client is None:
            return

        try:
            await self._connection.orchestrator.call(CallRequest(
                Operation.UNSUBSCRIBE,
                SubscriptionArgs(address),
                retries=0,
                allow_disconnected=True,
            ))
            logger.info(f"Unsubscribed {address}")
        except CamlinkError as e:
            logger.debug(f"Ignoring unsubscribe failure for {address}: {e}")

    def close(self):
        self._teardown()
        self._connection.remove_status_listener(self._on_status)

    def _teardown(self):
        self._generation += 1
        self.active = False
        self.address = None
        self._callback = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_status(self, state: ConnectionState):
        if state is ConnectionState.CONNECTED:
            return
        if self.active or self._subscribing:
            logger.info(f"Connection to {self._connection.address} lost, ending pull-point subscription")
            self._teardown()

    def _schedule(self, delay: float):
        if not self.active:
            return
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._fire)

    def _fire(self):
        self._timer = None
        if not self.active or self._polling:
            # An in-flight poll reschedules when it finishes
            return
        self._poll_task = asyncio.ensure_future(self._poll())

    async def _poll(self):
        if not self.active:
            return

        self._polling = True
        generation = self._generation
        address = self.address
        try:
            result = await self._connection.orchestrator.call(CallRequest(
                Operation.PULL_MESSAGES,
                PullMessagesArgs(address, self.pull_timeout, self.message_limit),
                timeout=self.call_timeout,
                retries=0,
            ))
        except CamlinkError as e:
            if generation == self._generation:
                self.failures += 1
                logger.warning(f"Pull-point poll on {address} failed ({self.failures} in a row): {e}")
        else:
            if generation == self._generation:
                self.failures = 0
                self._deliver(result.raw_payload)
        finally:
            self._polling = False
            self._poll_task = None
            self._schedule(self.interval)

    def _deliver(self, payload: Any):
        for notification in _notifications(payload):
            try:
                record = normalize_event(notification)
            except ParseError as e:
                logger.warning(f"Dropping malformed event from {self._connection.address}: {e}")
                continue

            try:
                self._callback(record)
            except Exception:
                logger.exception(f"Event callback failed for {self._connection.address}")
