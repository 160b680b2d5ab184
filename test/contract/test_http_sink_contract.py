"""Contract tests for the built-in HTTP delivery sink."""

from __future__ import annotations

import json

import httpx
import respx

from hashsync.delivery import state_machine
from hashsync.entities import EntityRef
from helpers.app import Product, add_product, bound


def test_change_is_posted_as_json(runtime, sqlite_session_factory) -> None:
    """A changed entity is POSTed with its tracked attributes and metadata."""
    runtime.subscribers.register(
        "partner", "product", "http", config={"url": "http://sink.test/products"}
    )
    product_id = add_product(sqlite_session_factory, "Lamp", 25)
    runtime.propagation.entity_created(bound(runtime, "product", product_id))

    with respx.mock(assert_all_called=True) as router:
        route = router.post("http://sink.test/products").respond(204)
        counts = runtime.dispatcher.run_due()

    assert counts == {state_machine.PUBLISHED: 1}
    body = json.loads(route.calls.last.request.content)
    assert body["entity"] == {"name": "Lamp", "price": 25}
    assert body["meta"]["entity_type"] == "product"
    assert body["meta"]["entity_id"] == str(product_id)


def test_deletion_is_sent_as_delete(runtime, sqlite_session_factory) -> None:
    """Removed entities are announced with DELETE on the entity URL."""
    runtime.subscribers.register(
        "partner", "product", "http", config={"url": "http://sink.test/products"}
    )
    product_id = add_product(sqlite_session_factory)
    runtime.propagation.entity_deleting(bound(runtime, "product", product_id))
    with sqlite_session_factory() as session:
        session.delete(session.get(Product, product_id))
        session.commit()
    runtime.propagation.entity_deleted(EntityRef.of("product", product_id))

    with respx.mock(assert_all_called=True) as router:
        route = router.delete(f"http://sink.test/products/{product_id}").respond(200)
        counts = runtime.dispatcher.run_due()

    assert route.called
    assert counts == {state_machine.PUBLISHED: 1}


def test_server_error_defers_delivery(runtime, sqlite_session_factory) -> None:
    """A 5xx response leaves the record deferred with the error recorded."""
    runtime.subscribers.register(
        "partner",
        "product",
        "http",
        config={"url": "http://sink.test/products", "max_attempts": 2},
    )
    product_id = add_product(sqlite_session_factory)
    runtime.propagation.entity_created(bound(runtime, "product", product_id))

    with respx.mock(assert_all_called=True) as router:
        router.post("http://sink.test/products").mock(return_value=httpx.Response(503))
        counts = runtime.dispatcher.run_due()

    assert counts == {state_machine.DEFERRED: 1}
    info = runtime.dispatcher.list_by_status(state_machine.DEFERRED)[0]
    assert info.attempts == 1
    assert info.last_error
