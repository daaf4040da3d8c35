from collections import deque
from typing import Callable, Deque, List, Optional

from hackbuddy.errors import HackBuddyError
from hackbuddy.models import Notice

NoticeListener = Callable[[Notice], None]

# notices kept for inspection; listeners see every one
NOTICE_HISTORY = 50


class Notifier:
    """Transient user-facing notices, fanned out to whoever is listening."""

    def __init__(self, history: int = NOTICE_HISTORY):
        self.notices: Deque[Notice] = deque(maxlen=history)
        self._last_error: Optional[Notice] = None
        self._listeners: List[NoticeListener] = []

    def subscribe(self, listener: NoticeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, notice: Notice) -> Notice:
        self.notices.append(notice)
        if notice.level == "error":
            self._last_error = notice
        for listener in list(self._listeners):
            listener(notice)
        return notice

    def info(self, message: str, description: Optional[str] = None) -> Notice:
        return self.notify(Notice(level="info", message=message, description=description))

    def success(self, message: str, description: Optional[str] = None) -> Notice:
        return self.notify(Notice(level="success", message=message, description=description))

    def warning(self, message: str, description: Optional[str] = None) -> Notice:
        return self.notify(Notice(level="warning", message=message, description=description))

    def error(self, message: str, error: Optional[Exception] = None) -> Notice:
        status_code = error.status_code if isinstance(error, HackBuddyError) else 500
        return self.notify(Notice(level="error", message=message, status_code=status_code))

    @property
    def last_error(self) -> Optional[Notice]:
        return self._last_error
