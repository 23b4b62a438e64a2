"""
Returns Module - Order / Customer Lookup for Admin Forms

Admins often only have a partial reference ("#0042", "priya", an email from a
support ticket). Each strategy below is tried in order; the first one that
matches anything decides the result. Several matches at that level are
reported as Ambiguous instead of guessing.

    Orders:    exact id → exact order number → order number suffix
    Customers: exact id → exact email → name prefix (case-insensitive) → id suffix
"""

from django.contrib.auth import get_user_model
from django.db.models import CharField, Q, Value
from django.db.models.functions import Cast, Concat

from orders.models import Order

MAX_CANDIDATES = 10

# Largest value a BigAutoField primary key can hold
MAX_ID = 2 ** 63 - 1


class Found:
    def __init__(self, obj, strategy):
        self.obj = obj
        self.strategy = strategy


class NotFound:
    def __init__(self, reference):
        self.reference = reference


class Ambiguous:
    def __init__(self, reference, strategy, candidates):
        self.reference = reference
        self.strategy = strategy
        self.candidates = candidates


def _clean(reference):
    text = str(reference or '').strip()
    if text.startswith('#'):
        text = text[1:].strip()
    return text


def _as_id(text):
    """Digits that fit a primary key, else None."""
    if not (text.isascii() and text.isdigit()):
        return None
    value = int(text)
    return value if value <= MAX_ID else None


def _resolve(reference, strategies):
    for name, queryset in strategies:
        if queryset is None:
            continue
        matches = list(queryset[:MAX_CANDIDATES + 1])
        if len(matches) == 1:
            return Found(matches[0], name)
        if matches:
            return Ambiguous(reference, name, matches[:MAX_CANDIDATES])
    return NotFound(reference)


def _with_text_id(queryset):
    return queryset.annotate(text_id=Cast('id', output_field=CharField()))


def resolve_order(reference):
    text = _clean(reference)
    if not text:
        return NotFound(reference)
    orders = Order.objects.select_related('customer')
    pk = _as_id(text)
    strategies = [
        ('id', orders.filter(pk=pk) if pk is not None else None),
        ('order_number', orders.filter(order_number__iexact=text)),
        ('order_number_suffix', orders.filter(order_number__iendswith=text).order_by('-ordered_at')),
    ]
    return _resolve(reference, strategies)


def resolve_customer(reference):
    text = _clean(reference)
    if not text:
        return NotFound(reference)
    users = get_user_model().objects.all()
    full_name = Concat('first_name', Value(' '), 'last_name', output_field=CharField())
    pk = _as_id(text)
    strategies = [
        ('id', users.filter(pk=pk) if pk is not None else None),
        ('email', users.filter(email__iexact=text) if '@' in text else None),
        ('name_prefix', users.annotate(full_name=full_name).filter(
            Q(full_name__istartswith=text) | Q(username__istartswith=text)
        ).order_by('id')),
        ('id_suffix', _with_text_id(users).filter(text_id__endswith=text).order_by('id')
         if text.isdigit() else None),
    ]
    return _resolve(reference, strategies)


def describe_candidates(result):
    """Short descriptions of Ambiguous candidates for the error response."""
    described = []
    for obj in result.candidates:
        if isinstance(obj, Order):
            described.append({'id': obj.pk, 'order_number': obj.order_number})
        else:
            described.append({
                'id': obj.pk,
                'email': obj.email,
                'name': obj.get_full_name() or obj.get_username(),
            })
    return described
