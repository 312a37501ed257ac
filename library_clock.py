from datetime import date, timedelta


class SystemClock:
    """Wall-clock source of the current date."""

    def now(self):
        return date.today()


class FixedClock:
    """Clock pinned to a chosen date, moved explicitly by tests or simulations."""

    def __init__(self, day):
        self._day = day

    def now(self):
        return self._day

    def set(self, day):
        self._day = day

    def advance(self, days=1):
        self._day = self._day + timedelta(days=days)
        return self._day
