import pulumi
from awsstack import AWSStack, resources_from_config
from config import load_config

def main():
    # Load YAML configuration
    config = load_config("config.yaml")

    try:
        resources = resources_from_config(config)
    except ValueError as e:
        pulumi.log.error(f"Invalid resource declaration: {e}")
        raise

    stack = AWSStack(config).add(*resources)

    try:
        created = stack.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    # Export created resources
    for name, resource in created.items():
        try:
            pulumi.export(name, resource.id)
        except Exception as e:
            pulumi.log.warn(f"Failed to export resource '{name}': {e}")

if __name__ == "__main__":
    main()
