"""
Grid coordinate system and labelling.

Columns are lettered like spreadsheet columns (A..Z, AA, AB, ...), rows are
numbered from 1, and squares are numbered row-major from 1.
"""
import logging
import string

from django.db import transaction

from .exceptions import InvalidStateError, NotFoundError, ValidationError
from .models import Event, Square

logger = logging.getLogger(__name__)

MAX_GRID_SIDE = 100


def column_label(index):
    """
    Spreadsheet style column label for a 0-based column index
    """
    if index < 0:
        raise ValueError("column index cannot be negative")
    label = ''
    index += 1
    while index:
        index, remainder = divmod(index - 1, 26)
        label = string.ascii_uppercase[remainder] + label
    return label


def position_label(grid_x, grid_y):
    return f"{column_label(grid_x)}{grid_y + 1}"


def square_number(grid_x, grid_y, cols):
    return grid_y * cols + grid_x + 1


def validate_dimensions(cols, rows):
    if cols < 1 or rows < 1:
        raise ValidationError("Grid must have at least one column and one row")
    if cols > MAX_GRID_SIDE or rows > MAX_GRID_SIDE:
        raise ValidationError(f"Grid sides cannot exceed {MAX_GRID_SIDE}")


def iter_cells(cols, rows):
    """
    Yield (grid_x, grid_y, square_number, position) for every cell, row-major
    """
    for grid_y in range(rows):
        for grid_x in range(cols):
            yield grid_x, grid_y, square_number(grid_x, grid_y, cols), position_label(grid_x, grid_y)


def build_squares(event):
    return [
        Square(
            event=event,
            grid_x=grid_x,
            grid_y=grid_y,
            square_number=number,
            position=position,
            status=Square.AVAILABLE,
        )
        for grid_x, grid_y, number, position in iter_cells(event.grid_cols, event.grid_rows)
    ]


def ensure_squares(event_id):
    """
    Maintenance repair for an event whose stored square set does not match
    its grid dimensions. Only missing cells are created; existing rows are
    never modified. Returns the number of squares created.
    """
    with transaction.atomic():
        event = Event.objects.select_for_update().filter(pk=event_id).first()
        if event is None:
            raise NotFoundError("Event not found")

        if event.status not in (Event.DRAFT, Event.SELLING):
            raise InvalidStateError("Squares can only be repaired for draft or selling events")

        existing = set(
            Square.objects.filter(event=event).values_list('grid_x', 'grid_y')
        )
        if len(existing) == event.total_squares:
            return 0

        if Square.objects.filter(event=event).exclude(status=Square.AVAILABLE).exists():
            raise InvalidStateError("Cannot regenerate squares once squares have been sold")

        missing = [
            square for square in build_squares(event)
            if (square.grid_x, square.grid_y) not in existing
        ]
        Square.objects.bulk_create(missing)

    logger.warning(
        f"Regenerated {len(missing)} missing squares for event {event.id} "
        f"(had {len(existing)}, expected {event.total_squares})"
    )
    return len(missing)
