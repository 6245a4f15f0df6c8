"""Recurrence calculator for expanding event templates."""
from datetime import datetime, timedelta
from typing import Iterator, Optional

from dateutil.relativedelta import TU, relativedelta

from scheduling.models import RecurrenceType


class RecurrenceCalculator:
    """Pure next-occurrence arithmetic for recurrence rules."""

    # relativedelta applies day=1 before the weekday, so TU(+1) lands on
    # the first Tuesday of the resulting month.
    FIRST_TUESDAY = relativedelta(day=1, weekday=TU(+1))
    FIRST_TUESDAY_NEXT_MONTH = relativedelta(months=1, day=1, weekday=TU(+1))

    def next_occurrence(self, after: datetime, rule) -> Optional[datetime]:
        """
        Compute the next occurrence strictly after ``after``.

        Time of day is kept in ``after``'s own timezone.

        Args:
            after: Reference point
            rule: RecurrenceType or stored rule value

        Returns:
            Next occurrence, or None when the rule does not recur
        """
        rule = RecurrenceType.parse(rule)

        if rule == RecurrenceType.WEEKLY:
            return after + timedelta(weeks=1)

        if rule == RecurrenceType.BIWEEKLY:
            return after + timedelta(weeks=2)

        if rule == RecurrenceType.MONTHLY:
            # relativedelta clamps the day to the length of the target month
            return after + relativedelta(months=1)

        if rule == RecurrenceType.FIRST_TUESDAY_OF_MONTH:
            candidate = after + self.FIRST_TUESDAY
            if candidate > after:
                return candidate
            return after + self.FIRST_TUESDAY_NEXT_MONTH

        return None

    def occurrences(
        self,
        start: datetime,
        rule,
        window_start: datetime,
        window_end: datetime
    ) -> Iterator[datetime]:
        """
        Walk a schedule from ``start`` and yield dates inside the window.

        The first date is ``start`` itself, followed by repeated
        applications of next_occurrence. Dates before ``window_start`` are
        skipped; the walk stops at the first date at or past ``window_end``.

        Args:
            start: Anchor of the schedule
            rule: Recurrence rule
            window_start: Inclusive lower bound
            window_end: Exclusive upper bound

        Yields:
            Occurrence datetimes in increasing order
        """
        current = start
        while current is not None and current < window_end:
            if current >= window_start:
                yield current
            current = self.next_occurrence(current, rule)
