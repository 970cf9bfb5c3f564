import os

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_apigatewayv2 as apigwv2,
    aws_apigatewayv2_integrations as apigwv2_integrations,
    aws_cognito as cognito,
    aws_dynamodb as ddb,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct


class TaskboardStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # Dev-first default: delete stateful resources on teardown for fast iteration.
        # For production deployments, set DATA_RETENTION_MODE=retain.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        schema_version = "2026-10-01"

        # Keep names collision-proof across multiple stacks in the same account+region.
        name_prefix = f"{construct_id}-{stage_name}"

        # Tasks and their title guards share one table keyed by taskId.
        tasks_table = ddb.Table(
            self,
            "TaskboardTasks",
            partition_key=ddb.Attribute(name="taskId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        actions_table = ddb.Table(
            self,
            "TaskboardActions",
            partition_key=ddb.Attribute(name="feedId", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="tsActionId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        users_table = ddb.Table(
            self,
            "TaskboardUsers",
            partition_key=ddb.Attribute(name="userId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            removal_policy=stateful_removal_policy,
        )

        connections_table = ddb.Table(
            self,
            "TaskboardConnections",
            partition_key=ddb.Attribute(name="connectionId", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            removal_policy=RemovalPolicy.DESTROY,
        )

        user_sync_fn = _lambda.Function(
            self,
            "TaskboardUserSyncHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="user_sync_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(10),
            environment={
                "TASKBOARD_USERS_TABLE": users_table.table_name,
            },
        )
        users_table.grant_write_data(user_sync_fn)

        user_pool = cognito.UserPool(
            self,
            "TaskboardUserPool",
            user_pool_name=f"{name_prefix}-users",
            self_sign_up_enabled=True,
            sign_in_aliases=cognito.SignInAliases(username=True),
            password_policy=cognito.PasswordPolicy(
                min_length=8,
                require_digits=True,
                require_lowercase=True,
                require_uppercase=False,
                require_symbols=False,
            ),
            lambda_triggers=cognito.UserPoolTriggers(post_confirmation=user_sync_fn),
            removal_policy=stateful_removal_policy,
        )
        user_pool_client = user_pool.add_client(
            "TaskboardUserPoolClient",
            auth_flows=cognito.AuthFlow(user_password=True, user_srp=True),
            generate_secret=False,
            id_token_validity=Duration.hours(1),
        )

        socket_fn = _lambda.Function(
            self,
            "TaskboardSocketHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="taskboard_socket_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(10),
            environment={
                "TASKBOARD_CONNECTIONS_TABLE": connections_table.table_name,
                "TASKBOARD_SCHEMA_VERSION": schema_version,
            },
        )
        connections_table.grant_read_write_data(socket_fn)

        socket_integration = apigwv2_integrations.WebSocketLambdaIntegration(
            "TaskboardSocketIntegration",
            socket_fn,
        )
        web_socket_api = apigwv2.WebSocketApi(
            self,
            "TaskboardSocketApi",
            api_name=f"{name_prefix}-socket",
            connect_route_options=apigwv2.WebSocketRouteOptions(integration=socket_integration),
            disconnect_route_options=apigwv2.WebSocketRouteOptions(integration=socket_integration),
            default_route_options=apigwv2.WebSocketRouteOptions(integration=socket_integration),
        )
        web_socket_stage = apigwv2.WebSocketStage(
            self,
            "TaskboardSocketStage",
            web_socket_api=web_socket_api,
            stage_name=stage_name,
            auto_deploy=True,
        )

        taskboard_fn = _lambda.Function(
            self,
            "TaskboardHandler",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="taskboard_handler.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(20),
            environment={
                "TASKBOARD_TASKS_TABLE": tasks_table.table_name,
                "TASKBOARD_ACTIONS_TABLE": actions_table.table_name,
                "TASKBOARD_USERS_TABLE": users_table.table_name,
                "TASKBOARD_CONNECTIONS_TABLE": connections_table.table_name,
                "TASKBOARD_WS_ENDPOINT": web_socket_stage.callback_url,
                "TASKBOARD_SCHEMA_VERSION": schema_version,
            },
        )
        tasks_table.grant_read_write_data(taskboard_fn)
        actions_table.grant_read_write_data(taskboard_fn)
        users_table.grant_read_data(taskboard_fn)
        connections_table.grant_read_write_data(taskboard_fn)
        web_socket_api.grant_manage_connections(taskboard_fn)

        for fn_id, fn in (
            ("TaskboardHandlerLogGroup", taskboard_fn),
            ("TaskboardSocketLogGroup", socket_fn),
            ("TaskboardUserSyncLogGroup", user_sync_fn),
        ):
            logs.LogGroup(
                self,
                fn_id,
                log_group_name=f"/aws/lambda/{fn.function_name}",
                retention=logs.RetentionDays.ONE_WEEK,
                removal_policy=stateful_removal_policy,
            )

        rest_api = apigw.RestApi(
            self,
            "TaskboardApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(stage_name=stage_name),
        )
        authorizer = apigw.CognitoUserPoolsAuthorizer(
            self,
            "TaskboardCognitoAuthorizer",
            cognito_user_pools=[user_pool],
        )
        integration = apigw.LambdaIntegration(taskboard_fn)

        tasks = rest_api.root.add_resource("tasks")
        task = tasks.add_resource("{taskId}")
        task_drag_drop = task.add_resource("drag-drop")
        task_smart_assign = task.add_resource("smart-assign")
        actions = rest_api.root.add_resource("actions")

        for resource, method in (
            (tasks, "GET"),
            (tasks, "POST"),
            (task, "PUT"),
            (task, "DELETE"),
            (task_drag_drop, "PUT"),
            (task_smart_assign, "POST"),
            (actions, "GET"),
        ):
            resource.add_method(
                method,
                integration,
                authorization_type=apigw.AuthorizationType.COGNITO,
                authorizer=authorizer,
            )

        CfnOutput(
            self,
            "TaskboardInvokeUrl",
            value=rest_api.url,
            description="Invoke URL base for taskboard REST endpoints.",
        )
        CfnOutput(
            self,
            "TaskboardSocketUrl",
            value=web_socket_stage.url,
            description="WebSocket URL clients connect to for live updates.",
        )
        CfnOutput(
            self,
            "TaskboardTasksTableName",
            value=tasks_table.table_name,
        )
        CfnOutput(
            self,
            "TaskboardActionsTableName",
            value=actions_table.table_name,
        )
        CfnOutput(
            self,
            "TaskboardUsersTableName",
            value=users_table.table_name,
        )
        CfnOutput(
            self,
            "UserPoolId",
            value=user_pool.user_pool_id,
        )
        CfnOutput(
            self,
            "UserPoolClientId",
            value=user_pool_client.user_pool_client_id,
        )
