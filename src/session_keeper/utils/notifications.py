"""
Notification system for Session Keeper.

This module provides event-driven notifications with:
- Publish/subscribe pattern with explicit subscription handles
- Async, queued event handling (emitters never wait for handlers)
- Event filtering and routing
"""

from typing import Optional, Dict, Any, List, Callable, Set, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import asyncio

from .logging import get_logger


logger = get_logger("session-keeper.notifications")


SESSION_CHANGED = "session_changed"


class EventPriority(Enum):
    """Event priority levels."""
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


class EventCategory(Enum):
    """Event categories for routing."""
    SYSTEM = "system"
    SESSION = "session"
    PROCESS = "process"
    SCHEDULER = "scheduler"


@dataclass
class Event:
    """Event data structure."""
    name: str
    category: EventCategory
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    priority: EventPriority = EventPriority.NORMAL
    source: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "category": self.category.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "priority": self.priority.value,
            "source": self.source,
            "metadata": self.metadata
        }


@dataclass(eq=False)
class Subscription:
    """Event subscription handle returned by EventBus.subscribe."""
    handler: Callable[[Event], Any]
    categories: Optional[Set[EventCategory]] = None
    event_names: Optional[Set[str]] = None
    priority_min: EventPriority = EventPriority.LOW
    is_async: bool = True
    filter_func: Optional[Callable[[Event], bool]] = None
    active: bool = True

    def matches(self, event: Event) -> bool:
        """Check if subscription matches event."""
        if not self.active:
            return False

        if event.priority.value < self.priority_min.value:
            return False

        if self.categories and event.category not in self.categories:
            return False

        if self.event_names and event.name not in self.event_names:
            return False

        if self.filter_func and not self.filter_func(event):
            return False

        return True


class EventBus:
    """Central event bus for notifications."""

    def __init__(self, max_history: int = 1000):
        """Initialize event bus."""
        self._subscriptions: List[Subscription] = []
        self._event_queue: Optional[asyncio.Queue] = None
        self._processor_task: Optional[asyncio.Task] = None
        self._event_history: List[Event] = []
        self._max_history = max_history

    @property
    def subscription_count(self) -> int:
        """Number of live subscriptions."""
        return len(self._subscriptions)

    def subscribe(
        self,
        handler: Callable[[Event], Any],
        categories: Optional[Union[EventCategory, List[EventCategory]]] = None,
        event_names: Optional[Union[str, List[str]]] = None,
        priority_min: EventPriority = EventPriority.LOW,
        is_async: Optional[bool] = None,
        filter_func: Optional[Callable[[Event], bool]] = None,
    ) -> Subscription:
        """
        Subscribe to events.

        Args:
            handler: Event handler function
            categories: Event categories to subscribe to
            event_names: Specific event names to subscribe to
            priority_min: Minimum priority level
            is_async: Whether handler is async (auto-detected if None)
            filter_func: Custom filter function

        Returns:
            Subscription handle to pass to unsubscribe()
        """
        if isinstance(categories, EventCategory):
            categories = {categories}
        elif isinstance(categories, list):
            categories = set(categories)

        if isinstance(event_names, str):
            event_names = {event_names}
        elif isinstance(event_names, list):
            event_names = set(event_names)

        if is_async is None:
            is_async = asyncio.iscoroutinefunction(handler)

        subscription = Subscription(
            handler=handler,
            categories=categories,
            event_names=event_names,
            priority_min=priority_min,
            is_async=is_async,
            filter_func=filter_func,
        )
        self._subscriptions.append(subscription)

        logger.debug(
            "subscription_added",
            categories=[c.value for c in categories] if categories else None,
            event_names=sorted(event_names) if event_names else None,
            handler=getattr(handler, '__name__', str(handler))
        )

        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """
        Unsubscribe from events.

        Events still queued are not delivered to the removed handler.

        Returns:
            True if removed, False if not found
        """
        subscription.active = False
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            return False
        logger.debug("subscription_removed")
        return True

    async def emit(
        self,
        name: str,
        category: EventCategory,
        data: Dict[str, Any],
        priority: EventPriority = EventPriority.NORMAL,
        source: Optional[str] = None,
        **metadata
    ) -> None:
        """
        Emit an event.

        The event is queued and dispatched by a background task; this
        coroutine returns without waiting for any handler.
        """
        event = Event(
            name=name,
            category=category,
            data=data,
            priority=priority,
            source=source,
            metadata=metadata
        )

        self._add_to_history(event)

        queue = self._get_queue()
        queue.put_nowait(event)

        if self._processor_task is None or self._processor_task.done():
            self._processor_task = asyncio.create_task(self._process_events())

        logger.debug(
            "event_emitted",
            event_name=name,
            category=category.value,
            queue_size=queue.qsize()
        )

    async def join(self) -> None:
        """Wait until every queued event has been dispatched."""
        if self._event_queue is not None:
            await self._event_queue.join()

    def _get_queue(self) -> asyncio.Queue:
        if self._event_queue is None:
            self._event_queue = asyncio.Queue()
        return self._event_queue

    async def _process_events(self) -> None:
        """Process queued events until the queue stays empty."""
        queue = self._get_queue()
        while True:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                if queue.empty():
                    break
                continue

            try:
                await self._dispatch_event(event)
            except Exception as e:
                logger.error(
                    "event_processing_error",
                    event_name=event.name,
                    error=str(e),
                    exc_info=True
                )
            finally:
                queue.task_done()

    async def _dispatch_event(self, event: Event) -> None:
        """Dispatch event to subscribed handlers."""
        subscriptions = [sub for sub in self._subscriptions if sub.matches(event)]

        if not subscriptions:
            logger.debug(
                "no_subscribers",
                event_name=event.name,
                category=event.category.value
            )
            return

        subscriptions.sort(key=lambda s: s.priority_min.value, reverse=True)

        tasks = []
        for subscription in subscriptions:
            if subscription.is_async:
                tasks.append(asyncio.create_task(
                    self._call_async_handler(subscription.handler, event)
                ))
            else:
                self._call_sync_handler(subscription.handler, event)

        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _call_async_handler(self, handler: Callable[[Event], Any], event: Event) -> None:
        """Call async event handler."""
        try:
            await handler(event)
        except Exception as e:
            logger.error(
                "async_handler_error",
                handler=getattr(handler, '__name__', 'unknown'),
                event_name=event.name,
                error=str(e),
                exc_info=True
            )

    def _call_sync_handler(self, handler: Callable[[Event], Any], event: Event) -> None:
        """Call sync event handler."""
        try:
            handler(event)
        except Exception as e:
            logger.error(
                "sync_handler_error",
                handler=getattr(handler, '__name__', 'unknown'),
                event_name=event.name,
                error=str(e),
                exc_info=True
            )

    def _add_to_history(self, event: Event) -> None:
        self._event_history.append(event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

    def get_history(
        self,
        category: Optional[EventCategory] = None,
        event_name: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[Event]:
        """Get event history, optionally filtered."""
        events = self._event_history

        if category:
            events = [e for e in events if e.category == category]

        if event_name:
            events = [e for e in events if e.name == event_name]

        if limit:
            events = events[-limit:]

        return events

    async def shutdown(self) -> None:
        """Shutdown event bus."""
        if self._processor_task:
            self._processor_task.cancel()
            try:
                await self._processor_task
            except asyncio.CancelledError:
                pass
            self._processor_task = None

        for subscription in self._subscriptions:
            subscription.active = False
        self._subscriptions.clear()
        self._event_history.clear()

        logger.info("event_bus_shutdown")


async def emit_session_changed(bus: EventBus, project_id: str, session_id: str) -> None:
    """Emit the session-changed notification consumed by the rate-limit monitor."""
    await bus.emit(
        SESSION_CHANGED,
        EventCategory.SESSION,
        {"projectId": project_id, "sessionId": session_id},
    )


__all__ = [
    'SESSION_CHANGED',
    'Event',
    'EventCategory',
    'EventPriority',
    'EventBus',
    'Subscription',
    'emit_session_changed',
]
