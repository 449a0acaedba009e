import asyncio


class HealthGauge:
    """
    Error-burst counter backing the readiness check.

    Every unexpected error (a failure outside regular flow control, such as a
    database outage while persisting credentials) bumps the gauge. A background task
    ticks it back down over time. A burst of errors pushes the value past the
    threshold and readiness reports unhealthy until it drains.

    Expected authentication failures (bad state, rejected codes) never bump it.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    @property
    def value(self) -> int:
        return self._value

    async def bump(self, amount: int = 1) -> int:
        async with self._lock:
            self._value += int(amount)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
