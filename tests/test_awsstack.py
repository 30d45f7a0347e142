import json

import pulumi
import pulumi_aws as aws
import pytest

from awsbuilder import DoubleMaterialization, Reference, UseBeforeMaterialization, append, set_
from awsresources import job, queue, subscription, topic
from awsstack import AWSStack, declared_value, resolve_value, resources_from_config
from config import ResourceDeclaration


def test_generate_resource_name(stack_config):
    stack = AWSStack(stack_config)
    assert stack.generate_resource_name("Orders") == "platform-orders-dev-euw1-orders"
    stack_config.region = "xx-central-9"
    assert stack.get_abbreviation(stack_config.region) == "xx"


def test_add_rejects_duplicate_identities(stack_config):
    stack = AWSStack(stack_config).add(queue("orders"))
    with pytest.raises(ValueError):
        stack.add(queue("orders"))


def test_resolve_value_before_materialization():
    dlq = queue("dlq")
    with pytest.raises(UseBeforeMaterialization):
        resolve_value(Reference(dlq, "arn"), {})
    with pytest.raises(UseBeforeMaterialization):
        resolve_value({"nested": [dlq]}, {})
    with pytest.raises(ValueError, match="not found"):
        resolve_value("ref:missing.arn", {})
    assert resolve_value("plain", {}) == "plain"


def test_declared_value_requires_earlier_declaration():
    dlq = queue("dlq")
    assert declared_value("ref:dlq", {"dlq": dlq}) is dlq
    ref = declared_value(["ref:dlq.url"], {"dlq": dlq})[0]
    assert ref.resource is dlq and ref.attribute == "url"
    with pytest.raises(ValueError, match="declared before"):
        declared_value({"x": "ref:later"}, {})


@pulumi.runtime.test
def test_build_materializes_resources_and_fills_handles(stack_config):
    dlq = queue("orders-dlq")
    orders = queue(
        "orders",
        set_("dead_letter_queue", dlq),
        set_("max_receive_count", 5),
        append("tags", ("Tier", "backend")),
    )
    created = AWSStack(stack_config).add(dlq, orders).build()

    assert set(created) == {"orders-dlq", "orders"}
    assert isinstance(orders.handle, aws.sqs.Queue)
    assert created["orders"] is orders.handle
    with pytest.raises(DoubleMaterialization):
        orders.materialize(object())

    def check(args):
        redrive, tags = args
        policy = json.loads(redrive)
        assert policy["maxReceiveCount"] == 5
        assert policy["deadLetterTargetArn"].endswith("platform-orders-dev-euw1-orders-dlq")
        assert tags == {"Owner": "platform-team", "Tier": "backend"}

    return pulumi.Output.all(orders.handle.redrive_policy, orders.handle.tags).apply(check)


def test_materialize_rejects_materialized_resource_before_instantiating(stack_config):
    orders = queue("orders")
    existing = object()
    orders.materialize(existing)
    stack = AWSStack(stack_config).add(orders)
    stack.find_resource_class = lambda resource_type: pytest.fail("resource class looked up")
    with pytest.raises(DoubleMaterialization):
        stack.materialize(orders)
    assert orders.handle is existing
    assert stack.build() == {}


@pulumi.runtime.test
def test_build_resolves_references_between_resources(stack_config):
    events = topic("events")
    inbox = queue("inbox")
    link = subscription("events-to-inbox", set_("topic", events), set_("endpoint", inbox))
    AWSStack(stack_config).add(events, inbox, link).build()

    def check(args):
        topic_arn, endpoint = args
        assert topic_arn.endswith("events")
        assert endpoint.endswith("inbox")

    return pulumi.Output.all(link.handle.topic, link.handle.endpoint).apply(check)


@pulumi.runtime.test
def test_build_fails_when_reference_is_not_in_stack(stack_config):
    dlq = queue("detached-dlq")
    orders = queue("orders", set_("dead_letter_queue", dlq), set_("max_receive_count", 2))
    with pytest.raises(UseBeforeMaterialization):
        AWSStack(stack_config).add(orders).build()
    assert not orders.is_materialized


@pulumi.runtime.test
def test_build_uses_custom_name(stack_config):
    orders = queue("orders", set_("construct_id", "OrdersQueue"))
    AWSStack(stack_config).add(orders).build()

    def check(urn):
        assert urn.endswith("::OrdersQueue")

    return orders.handle.urn.apply(check)


@pulumi.runtime.test
def test_build_materializes_job_definition(stack_config):
    nightly = job("nightly", set_("retries", 2), append("command", "run"), append("tags", "batch"))
    AWSStack(stack_config).add(nightly).build()
    assert isinstance(nightly.handle, aws.batch.JobDefinition)


@pulumi.runtime.test
def test_resources_from_config_builds_declared_resources(stack_config):
    stack_config.resources = [
        ResourceDeclaration("billing-dlq", "queue"),
        ResourceDeclaration("billing", "queue", {
            "dead_letter_queue": "ref:billing-dlq",
            "max_receive_count": 4,
            "tags": [["Tier", "backend"]],
        }),
    ]
    dlq, orders = resources_from_config(stack_config)
    assert orders.config["dead_letter_queue"] is dlq
    assert orders.config["tags"] == [["Tier", "backend"]]
    AWSStack(stack_config).add(dlq, orders).build()
    assert orders.is_materialized and dlq.is_materialized


def test_resources_from_config_rejects_unknown_builder(stack_config):
    stack_config.resources = [ResourceDeclaration("thing", "mystery")]
    with pytest.raises(ValueError, match="Unknown builder"):
        resources_from_config(stack_config)


def test_resources_from_config_rejects_duplicates(stack_config):
    stack_config.resources = [ResourceDeclaration("q", "queue"), ResourceDeclaration("q", "queue")]
    with pytest.raises(ValueError, match="more than once"):
        resources_from_config(stack_config)


@pulumi.runtime.test
def test_find_resource_class_unknown(stack_config):
    stack = AWSStack(stack_config)
    assert stack.find_resource_class("sqs.Queue") is aws.sqs.Queue
    assert stack.find_resource_class("nomodule.Thing") is None
    assert stack.find_resource_class("sqs.NoSuchThing") is None
    assert stack.find_resource_class("job") is None
