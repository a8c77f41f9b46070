from collections import deque
from typing import Awaitable, Callable, Deque

Action = Callable[[], Awaitable[None]]


class DeferredQueue:
    """Runs actions once the local transport is ready.

    Actions submitted before :meth:`release` are held in arrival order and
    run, in that order, when it is called. Afterwards every submitted action
    runs immediately. Release only takes effect once. If a held action
    raises, the ones behind it are dropped.
    """

    def __init__(self) -> None:
        self._pending: Deque[Action] = deque()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __len__(self) -> int:
        return len(self._pending)

    async def submit(self, action: Action) -> None:
        if self._released and not self._pending:
            await action()
        else:
            self._pending.append(action)

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            while self._pending:
                await self._pending.popleft()()
        except BaseException:
            self._pending.clear()
            raise
