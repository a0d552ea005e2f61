from __future__ import annotations

import pytest

from eventlens.field_paths import (
    FieldMappingConfig,
    FieldPathResolver,
    split_words,
    to_camel_case,
    to_kebab_case,
    to_pascal_case,
    to_snake_case,
)


@pytest.mark.parametrize(
    "value, expected",
    [
        ("orderId", ["order", "Id"]),
        ("order_id", ["order", "id"]),
        ("order-id", ["order", "id"]),
        ("OrderId", ["Order", "Id"]),
        ("HTTPRequestId", ["HTTP", "Request", "Id"]),
    ],
)
def test_split_words_handles_case_styles(value: str, expected: list[str]) -> None:
    assert split_words(value) == expected


def test_case_converters() -> None:
    assert to_snake_case("orderId") == "order_id"
    assert to_camel_case("order_id") == "orderId"
    assert to_kebab_case("OrderId") == "order-id"
    assert to_pascal_case("order-id") == "OrderId"
    assert to_snake_case("HTTPRequestId") == "http_request_id"


@pytest.mark.parametrize("value", ["orderId", "order_id", "HTTPRequestId", "ticket-id", "TraceID"])
def test_case_round_trips_converge(value: str) -> None:
    snake = to_snake_case(value)
    camel = to_camel_case(snake)
    assert to_snake_case(camel) == snake
    assert to_camel_case(to_snake_case(camel)) == camel


def test_resolve_paths_combines_conventions_and_containers() -> None:
    resolver = FieldPathResolver()

    paths = resolver.resolve_paths("orderId")

    assert paths[:4] == ["order_id", "orderId", "order-id", "OrderId"]
    assert "metadata.order_id" in paths
    assert "metadata.orderId" in paths
    assert "object.orderId" in paths
    assert "correlation.order_id" in paths
    assert "actor.OrderId" in paths
    assert len(paths) == len(set(paths)) == 20


def test_resolve_paths_is_deterministic() -> None:
    resolver = FieldPathResolver()
    assert resolver.resolve_paths("traceId") == resolver.resolve_paths("traceId")
    assert resolver.resolve_paths("trace_id") == FieldPathResolver().resolve_paths("trace_id")


def test_resolve_paths_applies_aliases() -> None:
    paths = FieldPathResolver().resolve_paths("shipmentId")

    assert "object.resourceId" in paths
    assert "object.resource_id" in paths
    assert "metadata.shipment_id" in paths


def test_explicit_override_wins() -> None:
    resolver = FieldPathResolver(
        FieldMappingConfig(explicit={"email": ["actor.emailHash", "metadata.email", "actor.emailHash"]})
    )

    assert resolver.resolve_paths("email") == ["actor.emailHash", "metadata.email"]
    assert "metadata.order_id" in resolver.resolve_paths("orderId")


def test_disabled_conventions_are_skipped() -> None:
    resolver = FieldPathResolver(
        FieldMappingConfig(kebab_case=False, pascal_case=False, object_paths=())
    )

    assert resolver.resolve_paths("orderId") == [
        "order_id",
        "orderId",
        "metadata.order_id",
        "metadata.orderId",
    ]


@pytest.mark.parametrize("value", ["", "___", "--"])
def test_identifier_type_without_words_resolves_to_nothing(value: str) -> None:
    assert FieldPathResolver().resolve_paths(value) == []


def test_resolve_paths_keeps_identifier_type_as_written() -> None:
    paths = FieldPathResolver().resolve_paths("orderID")

    assert "orderId" in paths
    assert "orderID" in paths
    assert "metadata.orderID" in paths
    assert "object.orderID" in paths
