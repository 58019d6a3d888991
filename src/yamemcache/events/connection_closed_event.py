from typing import Callable, List, Optional

ConnectionClosedHandler = Callable[[str, Optional[BaseException]], None]


class ConnectionClosedEvent(object):
    """
    Fired once, when a connection reaches its terminal closed state.

    Handlers get the connection name and the error that caused the
    close (None for an explicit close()). A pooling layer can
    subscribe to replace dead connections:

        connection.on_close += lambda name, error: pool.discard(name)
    """

    def __init__(self) -> None:
        self._eventhandlers: List[ConnectionClosedHandler] = []

    def __iadd__(self, handler: ConnectionClosedHandler) -> "ConnectionClosedEvent":
        self._eventhandlers.append(handler)
        return self

    def __isub__(self, handler: ConnectionClosedHandler) -> "ConnectionClosedEvent":
        self._eventhandlers.remove(handler)
        return self

    def __len__(self) -> int:
        return len(self._eventhandlers)

    def __call__(self, name: str, error: Optional[BaseException]) -> None:
        for eventhandler in list(self._eventhandlers):
            eventhandler(name, error)
