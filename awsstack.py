import pulumi
import pulumi_aws as aws
import inspect
from typing import Any, Dict, List, Optional

from awsbuilder import DoubleMaterialization, Reference, Resource
from awsresources import get_builder
from config import Config

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-gov-east-1": "usge1",
    "us-gov-west-1": "usgw1",
    "cn-north-1": "cnn1",
    "cn-northwest-1": "cnnw1",
}

def split_ref(ref_text: str):
    if "." in ref_text:
        return ref_text.split(".", 1)
    return ref_text, "id"

def resolve_value(value: Any, resources: Dict[str, Resource]) -> Any:
    if isinstance(value, Reference):
        attr_val = getattr(value.resource.handle, value.attribute, None)
        if attr_val is None:
            raise ValueError(f"Attribute '{value.attribute}' not found on resource '{value.resource.identity}'")
        if value.transform is not None:
            return pulumi.Output.from_input(attr_val).apply(value.transform)
        return attr_val
    elif isinstance(value, Resource):
        return value.handle
    elif isinstance(value, dict):
        return {k: resolve_value(v, resources) for k, v in value.items()}
    elif isinstance(value, (list, tuple)):
        return [resolve_value(item, resources) for item in value]
    elif isinstance(value, str):
        if value.startswith("secret:"):
            # Fetch secret from Pulumi config
            secret_key = value[len("secret:"):]
            config = pulumi.Config()
            return config.require_secret(secret_key)
        elif value.startswith("ref:"):
            ref_res, ref_attr = split_ref(value[4:])
            if ref_res not in resources:
                raise ValueError(f"Referenced resource '{ref_res}' not found.")
            return resolve_value(Reference(resources[ref_res], ref_attr), resources)
        else:
            return value
    else:
        return value

def declared_value(value: Any, finalized: Dict[str, Resource]) -> Any:
    """Turn "ref:" strings in a YAML declaration into resources declared earlier."""
    if isinstance(value, dict):
        return {k: declared_value(v, finalized) for k, v in value.items()}
    elif isinstance(value, list):
        return [declared_value(item, finalized) for item in value]
    elif isinstance(value, str) and value.startswith("ref:"):
        ref_text = value[4:]
        ref_res = ref_text.split(".", 1)[0]
        if ref_res not in finalized:
            raise ValueError(f"Referenced resource '{ref_res}' must be declared before it is used.")
        if "." in ref_text:
            return Reference(finalized[ref_res], ref_text.split(".", 1)[1])
        return finalized[ref_res]
    return value

def resources_from_config(config: Config) -> List[Resource]:
    """Finalize every resource declared in the configuration, in declaration order."""
    finalized: Dict[str, Resource] = {}
    for declaration in config.resources:
        builder = get_builder(declaration.builder)
        if builder is None:
            raise ValueError(f"Unknown builder '{declaration.builder}' for resource '{declaration.name}'")
        if declaration.name in finalized:
            raise ValueError(f"Resource '{declaration.name}' is declared more than once")
        values = declared_value(declaration.values, finalized)
        draft = builder.from_mapping(builder.create(declaration.name), values)
        finalized[declaration.name] = builder.finalize(draft)
    return list(finalized.values())


class AWSStack:
    def __init__(self, config: Config):
        self.config = config
        self.resources: Dict[str, Resource] = {}

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = (self.config.team or "team").strip().lower()
        service = (self.config.service or "svc").strip().lower()
        env = (self.config.environment or "dev").strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region or "us-east-1")
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def add(self, *resources: Resource) -> "AWSStack":
        for resource in resources:
            if resource.identity in self.resources:
                raise ValueError(f"Resource '{resource.identity}' is already part of this stack")
            self.resources[resource.identity] = resource
        return self

    def resolve_args(self, args: dict) -> dict:
        return {key: resolve_value(value, self.resources) for key, value in args.items()}

    def _apply_common_parameters(self, resolved_args: dict, init_sig: inspect.Signature) -> dict:
        if "tags" in init_sig.parameters:
            tags = dict(self.config.tags or {})
            tags.update(resolved_args.get("tags") or {})
            if tags:
                resolved_args["tags"] = tags
        else:
            resolved_args.pop("tags", None)
        if "region" in init_sig.parameters:
            if "region" not in resolved_args:
                resolved_args["region"] = self.config.region
        else:
            resolved_args.pop("region", None)
        return resolved_args

    def find_resource_class(self, resource_type: str) -> Optional[type]:
        if "." not in resource_type:
            return None
        module_name, class_name = resource_type.rsplit(".", 1)
        module = getattr(aws, module_name, None)
        if not module:
            pulumi.log.warn(f"AWS module '{module_name}' not found.")
            return None
        ResourceClass = getattr(module, class_name, None)
        if ResourceClass is None:
            pulumi.log.warn(f"Resource class '{class_name}' not found in module '{module_name}'.")
        return ResourceClass

    def materialize(self, resource: Resource) -> Any:
        if resource.is_materialized:
            raise DoubleMaterialization(resource.identity)
        definition = resource.definition
        ResourceClass = self.find_resource_class(definition.type)
        if ResourceClass is None:
            pulumi.log.warn(f"Skipping '{resource.identity}': no AWS class for '{definition.type}'.")
            return None
        # generated classes only expose *args/**kwargs on __init__
        init_sig = inspect.signature(getattr(ResourceClass, "_internal_init", ResourceClass.__init__))
        resolved_args = self.resolve_args(dict(definition.args))
        resolved_args = self._apply_common_parameters(resolved_args, init_sig)
        pulumi_name = definition.custom_name or self.generate_resource_name(definition.name)
        pulumi.log.debug(f"Resolved args for '{resource.identity}' => {sorted(resolved_args)}")
        resource_instance = ResourceClass(pulumi_name, **resolved_args)
        resource.materialize(resource_instance)
        pulumi.log.info(f"Created resource: {pulumi_name} ({definition.type})")
        return resource_instance

    def build(self) -> Dict[str, Any]:
        """Materialize every added resource in insertion order."""
        created = {}
        for name, resource in self.resources.items():
            if resource.is_materialized:
                continue
            instance = self.materialize(resource)
            if instance is not None:
                created[name] = instance
        return created
