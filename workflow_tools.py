"""Workflow tools exposed over MCP and their execution against the backend."""
import json
import logging
from typing import Any, Dict, List, Optional

from auth_models import BackendCredentials, ToolSpec
from backend_client import BackendClient, BackendFactory
from gateway_errors import BackendError, ToolError

logger = logging.getLogger(__name__)

_WORKFLOW_ID = {'type': 'string', 'description': 'Workflow ID'}

TOOLS: List[ToolSpec] = [
    ToolSpec(
        name='get_workflows',
        description='Get all N8N workflows',
        input_schema={'type': 'object', 'properties': {}, 'required': []},
    ),
    ToolSpec(
        name='get_workflow',
        description='Get a specific N8N workflow by ID',
        input_schema={
            'type': 'object',
            'properties': {'id': _WORKFLOW_ID},
            'required': ['id'],
        },
    ),
    ToolSpec(
        name='create_workflow',
        description='Create a new N8N workflow',
        input_schema={
            'type': 'object',
            'properties': {
                'name': {'type': 'string', 'description': 'Workflow name'},
                'nodes': {'type': 'array', 'description': 'Workflow nodes'},
                'connections': {'type': 'object', 'description': 'Node connections'},
            },
            'required': ['name', 'nodes', 'connections'],
        },
        mutating=True,
    ),
    ToolSpec(
        name='update_workflow',
        description='Update an existing N8N workflow',
        input_schema={
            'type': 'object',
            'properties': {
                'id': _WORKFLOW_ID,
                'name': {'type': 'string', 'description': 'Workflow name'},
                'nodes': {'type': 'array', 'description': 'Workflow nodes'},
                'connections': {'type': 'object', 'description': 'Node connections'},
                'active': {'type': 'boolean', 'description': 'Whether workflow should be active'},
            },
            'required': ['id'],
        },
        mutating=True,
    ),
    ToolSpec(
        name='delete_workflow',
        description='Delete an N8N workflow',
        input_schema={
            'type': 'object',
            'properties': {'id': _WORKFLOW_ID},
            'required': ['id'],
        },
        mutating=True,
    ),
    ToolSpec(
        name='activate_workflow',
        description='Activate an N8N workflow',
        input_schema={
            'type': 'object',
            'properties': {'id': _WORKFLOW_ID},
            'required': ['id'],
        },
        mutating=True,
    ),
    ToolSpec(
        name='deactivate_workflow',
        description='Deactivate an N8N workflow',
        input_schema={
            'type': 'object',
            'properties': {'id': _WORKFLOW_ID},
            'required': ['id'],
        },
        mutating=True,
    ),
    ToolSpec(
        name='execute_workflow',
        description='Execute an N8N workflow',
        input_schema={
            'type': 'object',
            'properties': {
                'id': _WORKFLOW_ID,
                'data': {'type': 'object', 'description': 'Input data for workflow execution'},
            },
            'required': ['id'],
        },
        mutating=True,
    ),
    ToolSpec(
        name='get_executions',
        description='Get workflow execution history',
        input_schema={
            'type': 'object',
            'properties': {
                'workflowId': {'type': 'string', 'description': 'Filter by workflow ID'},
                'limit': {
                    'type': 'number',
                    'description': 'Maximum number of executions to return',
                    'default': 20,
                },
            },
            'required': [],
        },
    ),
]

TOOLS_BY_NAME: Dict[str, ToolSpec] = {tool.name: tool for tool in TOOLS}


def get_tool(name: Optional[str]) -> Optional[ToolSpec]:
    return TOOLS_BY_NAME.get(name or '')


def list_tools() -> List[Dict[str, Any]]:
    return [tool.to_dict() for tool in TOOLS]


def list_openai_functions() -> List[Dict[str, Any]]:
    """The same tools in OpenAI function-calling format."""
    return [tool.to_openai_function() for tool in TOOLS]


def text_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    result = {'content': [{'type': 'text', 'text': text}]}
    if is_error:
        result['isError'] = True
    return result


def error_result(message: str) -> Dict[str, Any]:
    return text_result(f"Error: {message}", is_error=True)


def _check_arguments(tool: ToolSpec, arguments: Dict[str, Any]) -> None:
    missing = [name for name in tool.input_schema.get('required', []) if arguments.get(name) is None]
    if missing:
        raise ToolError(f"Missing required argument(s) for {tool.name}: {', '.join(missing)}")


async def _invoke(tool: ToolSpec, backend: BackendClient, args: Dict[str, Any]) -> Dict[str, Any]:
    name = tool.name
    if name == 'get_workflows':
        return text_result(json.dumps(await backend.list_workflows(), indent=2))

    if name == 'get_workflow':
        return text_result(json.dumps(await backend.get_workflow(args['id']), indent=2))

    if name == 'create_workflow':
        created = await backend.create_workflow({
            'name': args['name'],
            'nodes': args['nodes'],
            'connections': args['connections'],
            'active': False,
        })
        return text_result(f"Workflow created successfully: {json.dumps(created, indent=2)}")

    if name == 'update_workflow':
        payload = {key: args[key] for key in ('name', 'nodes', 'connections', 'active')
                   if args.get(key) is not None}
        updated = await backend.update_workflow(args['id'], payload)
        return text_result(f"Workflow updated successfully: {json.dumps(updated, indent=2)}")

    if name == 'delete_workflow':
        await backend.delete_workflow(args['id'])
        return text_result(f"Workflow {args['id']} deleted successfully")

    if name == 'activate_workflow':
        await backend.activate_workflow(args['id'])
        return text_result(f"Workflow {args['id']} activated successfully")

    if name == 'deactivate_workflow':
        await backend.deactivate_workflow(args['id'])
        return text_result(f"Workflow {args['id']} deactivated successfully")

    if name == 'execute_workflow':
        execution = await backend.execute_workflow(args['id'], args.get('data'))
        return text_result(json.dumps(execution, indent=2))

    if name == 'get_executions':
        executions = await backend.list_executions(args.get('workflowId'), args.get('limit'))
        return text_result(json.dumps(executions, indent=2))

    raise ToolError(f"Unknown tool: {name}")


class ToolExecutor:
    """Runs one tool call against the backend named by ``credentials``."""

    def __init__(self, backend_factory: BackendFactory):
        self.backend_factory = backend_factory

    async def call(self, name: str, arguments: Optional[Dict[str, Any]],
                   credentials: BackendCredentials) -> Dict[str, Any]:
        tool = get_tool(name)
        try:
            if tool is None:
                raise ToolError(f"Unknown tool: {name}")
            args = dict(arguments or {})
            _check_arguments(tool, args)
            async with self.backend_factory(credentials) as backend:
                return await _invoke(tool, backend, args)
        except (BackendError, ToolError) as e:
            logger.warning(f"Tool {name} failed: {e.message}")
            return error_result(e.message)
