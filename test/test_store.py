import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import make_details
from mandados.models import Order
from mandados.order_state import OrderState
from mandados.store import OrderFilter


def _order(clock, order_id="o-1", requester="cust-1", **fields) -> Order:
    details = make_details(clock)
    now = clock()
    return Order(
        order_id=order_id,
        requester=requester,
        description=details.description,
        category=details.category,
        offered_price=details.offered_price,
        pickup=details.pickup,
        delivery=details.delivery,
        deadline=details.deadline,
        created_at=now,
        updated_at=now,
        **fields,
    )


@pytest.mark.asyncio
async def test_conditional_update_applies_when_expectation_holds(store, clock):
    await store.insert(_order(clock))

    updated = await store.conditional_update(
        "o-1",
        {"state": OrderState.PENDING, "courier": None},
        {"state": OrderState.ACCEPTED, "courier": "courier-x"},
    )

    assert updated.state == OrderState.ACCEPTED
    assert (await store.find_by_id("o-1")).courier == "courier-x"


@pytest.mark.asyncio
async def test_conditional_update_refuses_stale_expectation(store, clock):
    await store.insert(_order(clock, state=OrderState.ACCEPTED, courier="courier-x"))

    result = await store.conditional_update(
        "o-1",
        {"state": OrderState.PENDING, "courier": None},
        {"state": OrderState.ACCEPTED, "courier": "courier-y"},
    )

    assert result is None
    assert (await store.find_by_id("o-1")).courier == "courier-x"


@pytest.mark.asyncio
async def test_conditional_update_unknown_id(store):
    assert await store.conditional_update("nope", {}, {"notes": "x"}) is None


@pytest.mark.asyncio
async def test_returned_orders_are_copies(store, clock):
    await store.insert(_order(clock))
    fetched = await store.find_by_id("o-1")
    fetched.state = OrderState.COMPLETED

    assert (await store.find_by_id("o-1")).state == OrderState.PENDING


@pytest.mark.asyncio
async def test_duplicate_insert(store, clock):
    await store.insert(_order(clock))
    with pytest.raises(KeyError):
        await store.insert(_order(clock))


@pytest.mark.asyncio
async def test_find_filters_newest_first(store, clock):
    await store.insert(_order(clock, order_id="a"))
    clock.advance(minutes=1)
    await store.insert(_order(clock, order_id="b", state=OrderState.CANCELLED, previous_courier="courier-x"))
    clock.advance(minutes=1)
    await store.insert(_order(clock, order_id="c", requester="cust-2"))

    assert [o.order_id for o in await store.find(OrderFilter())] == ["c", "b", "a"]
    assert [o.order_id for o in await store.find(OrderFilter(state=OrderState.PENDING))] == ["c", "a"]
    assert [o.order_id for o in await store.find(OrderFilter(requester="cust-1"))] == ["b", "a"]
    assert [o.order_id for o in await store.find(OrderFilter(courier_or_previous="courier-x"))] == ["b"]
    assert [o.order_id for o in await store.find(OrderFilter(limit=1))] == ["c"]


@pytest.mark.asyncio
async def test_find_by_last_update(store, clock):
    await store.insert(_order(clock, order_id="a"))
    clock.advance(minutes=1)
    await store.insert(_order(clock, order_id="b"))
    clock.advance(minutes=1)
    await store.conditional_update("a", {"state": OrderState.PENDING}, {"notes": "ring twice", "updated_at": clock()})

    by_update = await store.find(OrderFilter(order_by="updated_at", limit=1))

    assert [o.order_id for o in by_update] == ["a"]


@pytest.mark.parametrize(
    "fields",
    [
        {"state": OrderState.ACCEPTED},
        {"state": OrderState.COMPLETED},
        {"state": OrderState.PENDING, "courier": "courier-x"},
        {"state": OrderState.CANCELLED, "courier": "courier-x"},
    ],
)
def test_courier_must_match_assigned_state(clock, fields):
    with pytest.raises(PydanticValidationError):
        _order(clock, **fields)
