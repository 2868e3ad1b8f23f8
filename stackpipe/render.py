"""
Translation step - declare a validated descriptor graph as AWS CDK stacks.

The descriptor graph (stackpipe.schemas) knows nothing about the provider.
This module declares one environment as a CDK App with two stacks and
synthesizes their CloudFormation templates:

    DataStack     -> {env}-Data     (DynamoDB tables)
    ComposedStage -> {env}-RestApi  (functions, HTTP API, authorizer,
                                     integrations, routes, stage, ApiGatewayUrl)

Every route handle becomes its own CfnRoute, declared with authorization
NONE. The handle's overrides are then applied with add_property_override on
that CfnRoute, so a route with GET and HEAD gets both of its resources
patched.
"""

import tempfile
from dataclasses import dataclass, field
from typing import Any

import yaml
from aws_cdk import (
    App,
    Aws,
    BootstraplessSynthesizer,
    CfnOutput,
    RemovalPolicy,
    Stack,
    aws_apigatewayv2 as apigwv2,
    aws_dynamodb as dynamodb,
    aws_iam as iam,
    aws_lambda as lambda_,
)
from constructs import Construct

from stackpipe.composer import ComposedStage
from stackpipe.data import PARTITION_KEY, READ_DATA, READ_WRITE_DATA, DataStack
from stackpipe.errors import ConstructionError
from stackpipe.schemas import (
    ApiSurface,
    AuthorizationMode,
    AuthorizerBinding,
    DeployableUnit,
    RouteHandle,
)

ASSET_METADATA_KEY = "stackpipe:asset"

_TABLE_GRANTS = {
    READ_DATA: lambda table, grantee: table.grant_read_data(grantee),
    READ_WRITE_DATA: lambda table, grantee: table.grant_read_write_data(grantee),
}


@dataclass
class StackTemplate:
    """A synthesized stack, ready to hand to a provider."""
    stack_name: str
    environment: str
    kind: str
    template: dict[str, Any] = field(default_factory=dict)

    @property
    def resources(self) -> dict[str, Any]:
        return self.template.get("Resources", {})

    @property
    def output_keys(self) -> list[str]:
        return list(self.template.get("Outputs", {}))

    def resources_of_type(self, resource_type: str) -> dict[str, Any]:
        return {lid: r for lid, r in self.resources.items() if r["Type"] == resource_type}

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.template, sort_keys=False, default_flow_style=False)


def api_stack_name(environment: str) -> str:
    return f"{environment}-RestApi"


class TablesStack(Stack):
    """DynamoDB tables of one environment."""

    def __init__(self, scope: Construct, data_stack: DataStack, **kwargs) -> None:
        super().__init__(
            scope,
            data_stack.stack_name,
            stack_name=data_stack.stack_name,
            description=f"Data stack ({data_stack.environment})",
            **kwargs,
        )
        self.tables: dict[str, dynamodb.Table] = {}

        for handle in data_stack.tables.values():
            table = dynamodb.Table(
                self,
                handle.logical_id,
                table_name=handle.table_name,
                partition_key=dynamodb.Attribute(name=PARTITION_KEY, type=dynamodb.AttributeType.STRING),
                billing_mode=dynamodb.BillingMode.PAY_PER_REQUEST,
                removal_policy=RemovalPolicy.RETAIN,
            )
            CfnOutput(self, f"{handle.logical_id}Name", value=table.table_name)
            self.tables[handle.name] = table


class RestApiStack(Stack):
    """HTTP API of one environment, gated by its authorizer."""

    def __init__(
        self,
        scope: Construct,
        composed: ComposedStage,
        tables: dict[str, dynamodb.Table],
        **kwargs,
    ) -> None:
        stack_name = api_stack_name(composed.environment)
        surface = composed.surface
        super().__init__(
            scope,
            stack_name,
            stack_name=stack_name,
            description=f"{surface.name} ({composed.environment})",
            **kwargs,
        )
        self.surface = surface
        self.tables = tables

        self.api = apigwv2.CfnApi(
            self,
            "Api",
            name=surface.name,
            protocol_type="HTTP",
            cors_configuration=apigwv2.CfnApi.CorsProperty(
                allow_origins=list(surface.cors.allow_origins),
                allow_headers=list(surface.cors.allow_headers),
                allow_methods=[m.value for m in surface.cors.allow_methods],
                max_age=surface.cors.max_age_seconds,
            ),
        )

        self.functions = {name: self._function(unit) for name, unit in surface.units.items()}
        self.authorizer = self._authorizer(surface.authorizer) if surface.authorizer else None

        self.integrations: dict[str, apigwv2.CfnIntegration] = {}
        for route in surface.routes:
            name = route.integration.logical_name
            if name not in self.integrations:
                self.integrations[name] = apigwv2.CfnIntegration(
                    self,
                    f"{route.integration.logical_id}Integration",
                    api_id=self.api.ref,
                    integration_type="AWS_PROXY",
                    integration_uri=self.functions[name].function_arn,
                    payload_format_version="2.0",
                )

        self.routes = {handle.logical_id: self._route(handle) for handle in surface.handles}

        apigwv2.CfnStage(
            self,
            "Stage",
            api_id=self.api.ref,
            stage_name=surface.stage_name,
            auto_deploy=surface.auto_deploy,
        )
        CfnOutput(
            self,
            ApiSurface.output_key,
            value=f"https://{self.api.ref}.execute-api.{Aws.REGION}.{Aws.URL_SUFFIX}/{surface.stage_name}/",
            description=f"Invoke URL of {surface.name} ({surface.stage_name})",
        )

    def _function(self, unit: DeployableUnit) -> lambda_.Function:
        function = lambda_.Function(
            self,
            f"{unit.logical_id}Function",
            function_name=unit.function_name,
            runtime=lambda_.Runtime(unit.runtime),
            handler=unit.handler,
            code=lambda_.Code.from_cfn_parameters(),
            environment=dict(sorted(unit.environment.items())),
        )
        function.node.default_child.add_metadata(ASSET_METADATA_KEY, unit.code)

        for grant in unit.sorted_permissions():
            table = self.tables.get(grant.target)
            if table is None or grant.capability not in _TABLE_GRANTS:
                raise ConstructionError(
                    f"Unit '{unit.function_name}' was granted {grant.capability} on "
                    f"'{grant.target}', which is not a table of this environment"
                )
            _TABLE_GRANTS[grant.capability](table, function)

        function.add_permission(
            "ApiGatewayInvoke",
            principal=iam.ServicePrincipal("apigateway.amazonaws.com"),
            source_arn=f"arn:{Aws.PARTITION}:execute-api:{Aws.REGION}:{Aws.ACCOUNT_ID}:{self.api.ref}/*",
        )
        return function

    def _authorizer(self, binding: AuthorizerBinding) -> apigwv2.CfnAuthorizer:
        function = self.functions[binding.unit.logical_name]
        return apigwv2.CfnAuthorizer(
            self,
            binding.authorizer_id,
            api_id=self.api.ref,
            name=binding.unit.function_name,
            authorizer_type="REQUEST",
            authorizer_uri=(
                f"arn:{Aws.PARTITION}:apigateway:{Aws.REGION}:lambda:path/2015-03-31/functions/"
                f"{function.function_arn}/invocations"
            ),
            identity_source=list(binding.identity_source),
            authorizer_payload_format_version="2.0",
            enable_simple_responses=True,
        )

    def _override_value(self, value: Any) -> Any:
        if isinstance(value, AuthorizerBinding):
            if value is not self.surface.authorizer or self.authorizer is None:
                raise ConstructionError(
                    f"Route override references an authorizer not bound to '{self.surface.name}'"
                )
            return self.authorizer.ref
        return value

    def _route(self, handle: RouteHandle) -> apigwv2.CfnRoute:
        integration = self.integrations[handle.route.integration.logical_name]
        route = apigwv2.CfnRoute(
            self,
            handle.logical_id,
            api_id=self.api.ref,
            route_key=handle.route_key,
            authorization_type=AuthorizationMode.NONE.value,
            target=f"integrations/{integration.ref}",
        )
        for path, value in handle.overrides.items():
            route.add_property_override(path, self._override_value(value))
        return route


def render_stage(composed: ComposedStage, data_stack: DataStack) -> list[StackTemplate]:
    """
    Synthesize both stacks of an environment, in deployment order.

    The API stack grants against the tables of the data stack; the CDK turns
    those references into exports and imports between the two templates.
    """
    if data_stack.environment != composed.environment:
        raise ValueError(
            f"Data stack is for {data_stack.environment}, composed stage for {composed.environment}"
        )

    with tempfile.TemporaryDirectory(prefix="stackpipe-") as outdir:
        app = App(outdir=outdir, analytics_reporting=False)
        tables_stack = TablesStack(app, data_stack, synthesizer=BootstraplessSynthesizer())
        api_stack = RestApiStack(app, composed, tables_stack.tables, synthesizer=BootstraplessSynthesizer())
        assembly = app.synth()

        return [
            StackTemplate(
                stack_name=tables_stack.stack_name,
                environment=data_stack.environment,
                kind="data",
                template=assembly.get_stack_by_name(tables_stack.stack_name).template,
            ),
            StackTemplate(
                stack_name=api_stack.stack_name,
                environment=composed.environment,
                kind="api",
                template=assembly.get_stack_by_name(api_stack.stack_name).template,
            ),
        ]
