"""
Returns Module - Status Transition Engine

Every change to ReturnRequest.status goes through this module so that the
status column and the ReturnStatusHistory table never disagree.

    transition()            admin and customer paths; precondition + graph checked
    advance_from_courier()  webhook path; forward-only, illegal moves are ignored
"""

import logging

from django.db import transaction
from django.utils import timezone

from .exceptions import ConcurrentTransitionError, InvalidTransitionError, PreconditionError
from .models import ReturnRequest, ReturnStatusHistory

logger = logging.getLogger('returns')

TERMINAL_STATUSES = {'completed', 'cancelled'}

# Status → statuses it may move to (cancellation handled separately)
TRANSITIONS = {
    'requested': {'approved', 'rejected', 'pending_approval'},
    'pending_approval': {'approved', 'rejected'},
    'approved': {'pickup_scheduled'},
    'pickup_scheduled': {'picked_up', 'pickup_failed'},
    'pickup_failed': {'pickup_scheduled'},
    'picked_up': {'in_transit'},
    'in_transit': {'received'},
    'received': {'inspected'},
    'inspected': {'approved_refund', 'rejected_refund'},
    'approved_refund': {'refund_processed'},
    'refund_processed': {'completed'},
    'rejected_refund': {'completed'},
    'rejected': {'completed'},
}

# A rejected return can only be closed, never cancelled
NOT_CANCELLABLE = TERMINAL_STATUSES | {'rejected'}

# Order in which courier scans may move a return
COURIER_PROGRESSION = ['approved', 'pickup_scheduled', 'picked_up', 'in_transit', 'received']
PICKUP_FAILURE_FROM = {'pickup_scheduled', 'picked_up', 'in_transit'}

COMPLETION_STAMPED = {'completed', 'cancelled', 'refund_processed'}


def can_transition(current, target):
    if target == 'cancelled':
        return current not in NOT_CANCELLABLE
    return target in TRANSITIONS.get(current, set())


def _write(return_request, target, changed_by, comment):
    """Compare-and-set the status column and append the history row."""
    current = return_request.status
    now = timezone.now()
    updates = {'status': target, 'updated_at': now}
    if target in COMPLETION_STAMPED:
        updates['completed_at'] = now

    with transaction.atomic():
        updated = ReturnRequest.objects.filter(
            pk=return_request.pk, status=current,
        ).update(**updates)
        if not updated:
            raise ConcurrentTransitionError(return_request.return_number, current)
        ReturnStatusHistory.objects.create(
            return_request=return_request,
            from_status=current,
            to_status=target,
            changed_by=str(changed_by),
            comment=comment or '',
        )

    for field, value in updates.items():
        setattr(return_request, field, value)
    logger.info(f"Return {return_request.return_number}: {current} → {target} (by {changed_by})")
    return return_request


def transition(return_request, target, changed_by, comment='', expected=None, enforce_graph=True):
    """
    Move a return to `target`.

    expected: statuses the caller requires the return to be in. A mismatch
    raises PreconditionError and nothing is written.
    enforce_graph: False only for the admin update_status escape hatch.
    """
    current = return_request.status
    if expected is not None and current not in expected:
        raise PreconditionError(expected, current)
    if enforce_graph and not can_transition(current, target):
        raise InvalidTransitionError(current, target)
    return _write(return_request, target, changed_by, comment)


def advance_from_courier(return_request, target, changed_by, comment=''):
    """
    Apply a courier-mapped status. Returns True when the status changed.

    Scans arrive out of order and get redelivered, so a target that is not
    ahead of the current status is skipped with a log line instead of raising.
    """
    current = return_request.status
    if target == current:
        return False

    legal = False
    if target == 'pickup_failed':
        legal = current in PICKUP_FAILURE_FROM
    elif target in COURIER_PROGRESSION:
        if current in COURIER_PROGRESSION:
            legal = COURIER_PROGRESSION.index(target) > COURIER_PROGRESSION.index(current)
        elif current == 'pickup_failed':
            # Courier retried the pickup after a failed attempt
            legal = target != 'approved'

    if not legal:
        logger.warning(
            f"Ignoring courier status '{target}' for return {return_request.return_number}: "
            f"not a forward move from '{current}'"
        )
        return False

    _write(return_request, target, changed_by, comment)
    return True


def record_initial_history(return_request, entries, changed_by):
    """
    Write the opening history of a freshly created return.

    entries: [(status, comment), ...] ending with the return's current status.
    """
    previous = ''
    rows = []
    # Created one by one so id order matches the lifecycle order
    for status_value, comment in entries:
        rows.append(ReturnStatusHistory.objects.create(
            return_request=return_request,
            from_status=previous,
            to_status=status_value,
            changed_by=str(changed_by),
            comment=comment,
        ))
        previous = status_value
    return rows
