import json
import pulumi
from typing import Any, Dict, Iterable, Mapping, Optional

from awsbuilder import Reference, Resource, ResourceBuilder, Rule, listing, scalar
from config import AWSResource


def tag_dict(items: Iterable[Any]) -> Dict[str, str]:
    """Render accumulated tag entries; later entries win for the same key."""
    tags: Dict[str, str] = {}
    for item in items:
        if isinstance(item, Mapping):
            tags.update({str(k): str(v) for k, v in item.items()})
        else:
            key, value = item
            tags[str(key)] = str(value)
    return tags


def _compact(args: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in args.items() if value is not None and value != {} and value != []}


def _arn(value: Any) -> Any:
    if isinstance(value, Resource):
        return Reference(value, "arn")
    return value


# ---------------------------------------------------------------------------
# Batch job definition: the smallest complete example of the pattern.
# ---------------------------------------------------------------------------

def _job_tags(items: Iterable[Any]) -> Dict[str, str]:
    # bare strings are flags
    return tag_dict({item: "true"} if isinstance(item, str) else item for item in items)


def _convert_job(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    container = {"image": cfg["image"], "command": list(cfg["command"]),
                 "resourceRequirements": [{"type": "VCPU", "value": str(cfg["vcpus"])},
                                          {"type": "MEMORY", "value": str(cfg["memory"])}]}
    return AWSResource(
        name=name,
        type="batch.JobDefinition",
        args=_compact({
            "type": "container",
            "container_properties": json.dumps(container),
            "retry_strategy": {"attempts": cfg["retries"]},
            "tags": _job_tags(cfg["tags"]),
        }),
    )


job = ResourceBuilder(
    "job",
    [
        scalar("retries", default=3),
        scalar("image", default="public.ecr.aws/amazonlinux/amazonlinux:latest"),
        scalar("vcpus", default=1),
        scalar("memory", default=2048),
        listing("command"),
        listing("tags"),
    ],
    _convert_job,
    rules=[Rule("retries must be between 1 and 10", lambda c: not 1 <= c["retries"] <= 10)],
)


# ---------------------------------------------------------------------------
# SQS
# ---------------------------------------------------------------------------

def _redrive_policy(max_receive_count: int):
    def render(arn: str) -> str:
        return json.dumps({"deadLetterTargetArn": arn, "maxReceiveCount": max_receive_count})
    return render


def _convert_queue(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    redrive = None
    if cfg["dead_letter_queue"] is not None:
        redrive = Reference(cfg["dead_letter_queue"], "arn", _redrive_policy(cfg["max_receive_count"]))
    return AWSResource(
        name=name,
        type="sqs.Queue",
        custom_name=cfg["construct_id"] if cfg["construct_id"] != name else None,
        args=_compact({
            "name": name if cfg["fifo"] else None,
            "fifo_queue": cfg["fifo"] or None,
            "content_based_deduplication": cfg["content_based_deduplication"],
            "visibility_timeout_seconds": cfg["visibility_timeout"],
            "message_retention_seconds": cfg["message_retention"],
            "delay_seconds": cfg["delay_seconds"],
            "redrive_policy": redrive,
            "tags": tag_dict(cfg["tags"]),
        }),
    )


queue = ResourceBuilder(
    "queue",
    [
        scalar("construct_id", default_from="name"),
        scalar("visibility_timeout"),
        scalar("message_retention"),
        scalar("fifo", default=False),
        scalar("content_based_deduplication"),
        scalar("delay_seconds"),
        scalar("dead_letter_queue"),
        scalar("max_receive_count"),
        listing("tags"),
    ],
    _convert_queue,
    rules=[
        Rule("content-based deduplication requires a FIFO queue",
             lambda c: bool(c["content_based_deduplication"]) and not c["fifo"]),
        Rule("FIFO queue names must end with '.fifo'",
             lambda c: c["fifo"] and not c["name"].endswith(".fifo")),
        Rule("dead_letter_queue and max_receive_count must be set together",
             lambda c: (c["dead_letter_queue"] is None) != (c["max_receive_count"] is None)),
    ],
)


# ---------------------------------------------------------------------------
# SNS
# ---------------------------------------------------------------------------

def _convert_topic(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    return AWSResource(
        name=name,
        type="sns.Topic",
        custom_name=cfg["construct_id"] if cfg["construct_id"] != name else None,
        args=_compact({
            "name": name if cfg["fifo"] else None,
            "display_name": cfg["display_name"],
            "fifo_topic": cfg["fifo"] or None,
            "content_based_deduplication": cfg["content_based_deduplication"],
            "tags": tag_dict(cfg["tags"]),
        }),
    )


topic = ResourceBuilder(
    "topic",
    [
        scalar("construct_id", default_from="name"),
        scalar("display_name"),
        scalar("fifo", default=False),
        scalar("content_based_deduplication"),
        listing("tags"),
    ],
    _convert_topic,
    rules=[
        Rule("content-based deduplication requires a FIFO topic",
             lambda c: bool(c["content_based_deduplication"]) and not c["fifo"]),
        Rule("FIFO topic names must end with '.fifo'",
             lambda c: c["fifo"] and not c["name"].endswith(".fifo")),
    ],
)


def _convert_subscription(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    return AWSResource(
        name=name,
        type="sns.TopicSubscription",
        args=_compact({
            "topic": _arn(cfg["topic"]),
            "endpoint": _arn(cfg["endpoint"]),
            "protocol": cfg["protocol"],
            "raw_message_delivery": cfg["raw_message_delivery"],
            "filter_policy": json.dumps(cfg["filter_policy"]) if cfg["filter_policy"] else None,
        }),
    )


subscription = ResourceBuilder(
    "subscription",
    [
        scalar("topic", required=True),
        scalar("endpoint", required=True),
        scalar("protocol", default="sqs"),
        scalar("raw_message_delivery", default=False),
        scalar("filter_policy"),
    ],
    _convert_subscription,
    rules=[
        Rule("raw message delivery is only supported for sqs, http and https endpoints",
             lambda c: c["raw_message_delivery"] and c["protocol"] not in ("sqs", "http", "https")),
    ],
)


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------

def _convert_bucket(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    website = None
    if cfg["website_index_document"]:
        website = _compact({"index_document": cfg["website_index_document"],
                            "error_document": cfg["website_error_document"]})
    return AWSResource(
        name=name,
        type="s3.Bucket",
        custom_name=cfg["construct_id"] if cfg["construct_id"] != name else None,
        args=_compact({
            "acl": cfg["acl"],
            "force_destroy": cfg["force_destroy"],
            "versioning": {"enabled": cfg["versioned"]},
            "website": website,
            "lifecycle_rules": list(cfg["lifecycle_rules"]),
            "cors_rules": list(cfg["cors_rules"]),
            "tags": tag_dict(cfg["tags"]),
        }),
    )


bucket = ResourceBuilder(
    "bucket",
    [
        scalar("construct_id", default_from="name"),
        scalar("acl", default="private"),
        scalar("versioned", default=False),
        scalar("force_destroy", default=False),
        scalar("website_index_document"),
        scalar("website_error_document"),
        listing("lifecycle_rules"),
        listing("cors_rules"),
        listing("tags"),
    ],
    _convert_bucket,
    rules=[
        Rule("website_error_document requires website_index_document",
             lambda c: bool(c["website_error_document"]) and not c["website_index_document"]),
        Rule("website hosting requires the public-read acl",
             lambda c: bool(c["website_index_document"]) and c["acl"] != "public-read"),
    ],
)


# ---------------------------------------------------------------------------
# IAM
# ---------------------------------------------------------------------------

def _is_wildcard(values) -> bool:
    return list(values) == ["*"]


def policy_document(cfg: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": cfg["effect"],
            "Action": list(cfg["actions"]),
            "Resource": list(cfg["resources"]),
        }],
    }


def _convert_policy(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    return AWSResource(
        name=name,
        type="iam.Policy",
        args=_compact({
            "description": cfg["description"],
            "policy": json.dumps(policy_document(cfg)),
            "tags": tag_dict(cfg["tags"]),
        }),
    )


policy = ResourceBuilder(
    "policy",
    [
        scalar("effect", default="Allow"),
        scalar("description"),
        listing("actions"),
        listing("resources"),
        listing("tags"),
    ],
    _convert_policy,
    rules=[
        Rule("effect must be 'Allow' or 'Deny'", lambda c: c["effect"] not in ("Allow", "Deny")),
        Rule("a policy needs at least one action", lambda c: not c["actions"]),
        Rule("a policy needs at least one resource", lambda c: not c["resources"]),
        Rule("actions and resources must not both be the '*' wildcard",
             lambda c: _is_wildcard(c["actions"]) and _is_wildcard(c["resources"])),
    ],
)


def _convert_role(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    assume = {
        "Version": "2012-10-17",
        "Statement": [{
            "Effect": "Allow",
            "Principal": {"Service": cfg["service"]},
            "Action": "sts:AssumeRole",
        }],
    }
    return AWSResource(
        name=name,
        type="iam.Role",
        args=_compact({
            "assume_role_policy": json.dumps(assume),
            "description": cfg["description"],
            "managed_policy_arns": [_arn(p) for p in cfg["policies"]],
            "tags": tag_dict(cfg["tags"]),
        }),
    )


role = ResourceBuilder(
    "role",
    [
        scalar("service", default="lambda.amazonaws.com"),
        scalar("description"),
        listing("policies"),
        listing("tags"),
    ],
    _convert_role,
)


# ---------------------------------------------------------------------------
# Lambda
# ---------------------------------------------------------------------------

def _convert_function(name: str, cfg: Mapping[str, Any]) -> AWSResource:
    return AWSResource(
        name=name,
        type="lambda_.Function",
        custom_name=cfg["construct_id"] if cfg["construct_id"] != name else None,
        args=_compact({
            "handler": cfg["handler"],
            "runtime": cfg["runtime"],
            "code": pulumi.FileArchive(cfg["code_path"]),
            "role": _arn(cfg["role"]),
            "timeout": cfg["timeout"],
            "memory_size": cfg["memory_size"],
            "description": cfg["description"],
            "environment": {"variables": tag_dict(cfg["environment"])} if cfg["environment"] else None,
            "layers": list(cfg["layers"]),
            "tags": tag_dict(cfg["tags"]),
        }),
    )


function = ResourceBuilder(
    "function",
    [
        scalar("construct_id", default_from="name"),
        scalar("handler", required=True),
        scalar("runtime", required=True),
        scalar("code_path", required=True),
        scalar("role", required=True),
        scalar("timeout", default=3),
        scalar("memory_size", default=128),
        scalar("description"),
        listing("environment"),
        # the layer set is declared as a whole; a later declaration replaces it
        listing("layers", replace=True),
        listing("tags"),
    ],
    _convert_function,
    rules=[
        Rule("timeout must be between 1 and 900 seconds", lambda c: not 1 <= c["timeout"] <= 900),
        Rule("memory_size must be between 128 and 10240 MB", lambda c: not 128 <= c["memory_size"] <= 10240),
    ],
)


BUILDERS: Dict[str, ResourceBuilder] = {
    b.resource_type: b for b in (job, queue, topic, subscription, bucket, policy, role, function)
}


def get_builder(builder_name: str) -> Optional[ResourceBuilder]:
    return BUILDERS.get(builder_name)
