"""Conflict detection for proposed shifts.

Flags proposed occurrences whose time range overlaps an existing booking of
the same caregiver or the same client. Ranges are half-open, so a shift
ending exactly when another starts does not conflict.
"""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date as date_type
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from carebase.scheduling.time_slots import Occurrence

ConflictParty = Literal["caregiver", "client"]


@dataclass(frozen=True)
class ExistingBooking:
    """A committed shift, supplied read-only by the schedule store."""

    id: str
    date: date_type
    start: datetime
    end: datetime
    caregiver_id: str
    client_id: str


class OccurrenceConflict(BaseModel):
    """Represents an overlap between a proposed occurrence and an existing booking."""

    date: date_type = Field(description="Date of the proposed occurrence")
    party: ConflictParty = Field(description="Which party is double-booked")
    existing_booking_id: str = Field(description="ID of the overlapping booking")
    existing_start: datetime = Field(description="Start of the overlapping booking")
    existing_end: datetime = Field(description="End of the overlapping booking")
    proposed_start: datetime = Field(description="Start of the proposed occurrence")
    proposed_end: datetime = Field(description="End of the proposed occurrence")


def ranges_overlap(start1: datetime, end1: datetime, start2: datetime, end2: datetime) -> bool:
    """Half-open overlap test: start1 < end2 AND start2 < end1."""
    return start1 < end2 and start2 < end1


def _sweep(
    occurrences: Sequence[Occurrence],
    bookings: Iterable[ExistingBooking],
    party: ConflictParty,
) -> list[OccurrenceConflict]:
    """Find overlaps between occurrences and one party's bookings.

    Occurrences are visited in start order. Bookings enter an active heap
    (keyed by end) once they start before the occurrence ends and leave it for
    good once they end at or before an occurrence start, because later
    occurrences never start earlier.
    """
    ordered_bookings = sorted(bookings, key=lambda b: (b.start, b.end, b.id))
    active: list[tuple[datetime, int, ExistingBooking]] = []
    conflicts: list[OccurrenceConflict] = []
    next_booking = 0

    for occurrence in sorted(occurrences, key=lambda o: (o.start, o.end)):
        while next_booking < len(ordered_bookings) and ordered_bookings[next_booking].start < occurrence.end:
            booking = ordered_bookings[next_booking]
            heapq.heappush(active, (booking.end, next_booking, booking))
            next_booking += 1

        while active and active[0][0] <= occurrence.start:
            heapq.heappop(active)

        # Every remaining booking ends after occurrence.start; check the start side
        for _, _, booking in sorted(active, key=lambda item: item[1]):
            if ranges_overlap(occurrence.start, occurrence.end, booking.start, booking.end):
                conflicts.append(
                    OccurrenceConflict(
                        date=occurrence.date,
                        party=party,
                        existing_booking_id=booking.id,
                        existing_start=booking.start,
                        existing_end=booking.end,
                        proposed_start=occurrence.start,
                        proposed_end=occurrence.end,
                    )
                )

    return conflicts


def detect_conflicts(
    occurrences: Sequence[Occurrence],
    bookings: Iterable[ExistingBooking],
    *,
    caregiver_id: str,
    client_id: str,
) -> list[OccurrenceConflict]:
    """Detect overlaps for the caregiver and the client independently.

    A booking shared by both parties that overlaps an occurrence is reported
    twice, once per party.

    Args:
        occurrences: Proposed occurrences
        bookings: Existing bookings involving the caregiver or the client
        caregiver_id: Caregiver of the proposed batch
        client_id: Client of the proposed batch

    Returns:
        Conflicts ordered by date, then party (caregiver first)
    """
    booking_list = list(bookings)
    conflicts = _sweep(occurrences, (b for b in booking_list if b.caregiver_id == caregiver_id), "caregiver")
    conflicts += _sweep(occurrences, (b for b in booking_list if b.client_id == client_id), "client")
    conflicts.sort(key=lambda c: (c.proposed_start, c.party != "caregiver", c.existing_start, c.existing_booking_id))
    return conflicts


def conflict_dates(conflicts: Iterable[OccurrenceConflict]) -> set[date_type]:
    """Dates that have at least one conflict."""
    return {c.date for c in conflicts}
