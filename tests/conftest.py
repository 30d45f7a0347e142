import pulumi
import pytest

from config import Config


class AWSMocks(pulumi.runtime.Mocks):
    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        outputs = dict(args.inputs)
        outputs["arn"] = f"arn:aws:mock:::{args.name}"
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        return {}


pulumi.runtime.set_mocks(AWSMocks(), preview=False)


@pytest.fixture
def stack_config():
    return Config(
        team="Platform",
        service="Orders",
        environment="dev",
        region="eu-west-1",
        tags={"Owner": "platform-team"},
    )
