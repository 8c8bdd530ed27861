"""
Flow Graph - DAG of typed nodes evaluated by explicit work-list traversal

Nodes:
- input: seeds the flow with a named input value
- prompt: resolves a template with the incoming value and invokes the model
- function: applies a Python callable (sync or async)
- condition: routes the value along its "true" or "false" edges
- iterator: bounded fan-out over a sequence
- collector: joins the branch outputs of the nearest enclosing iterator
- output: records the value under its name
"""

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List, Callable, Deque, Tuple
from pydantic import BaseModel, Field

from colloquy.errors.exceptions import ColloquyError, FlowExecutionError, FlowValidationError
from colloquy.models.conversation import Message, Role
from colloquy.models.invocation import ModelRequest
from colloquy.prompts.template_manager import TemplateManager
from colloquy.router.invoker import ModelInvoker
from colloquy.utils.logger import get_logger

logger = get_logger(__name__)

# (iterator node id, item index, item count)
Frame = Tuple[str, int, int]
Lineage = Tuple[Frame, ...]


class NodeType(str, Enum):
    INPUT = "input"
    PROMPT = "prompt"
    FUNCTION = "function"
    CONDITION = "condition"
    ITERATOR = "iterator"
    COLLECTOR = "collector"
    OUTPUT = "output"


@dataclass
class FlowNode:
    """
    Node definition

    ``name`` names input and output nodes. ``handler`` is the callable of a
    function node and the predicate of a condition node. Prompt nodes
    resolve ``template``/``variant``; a non-dict incoming value is bound to
    ``input_variable``.
    """
    id: str
    type: NodeType
    name: Optional[str] = None
    handler: Optional[Callable[[Any], Any]] = None
    template: Optional[str] = None
    variant: Optional[str] = None
    input_variable: str = "input"
    max_items: int = 100


@dataclass
class FlowEdge:
    source: str
    target: str
    branch: Optional[bool] = None  # condition edges only


@dataclass
class _WorkItem:
    node_id: str
    value: Any
    lineage: Lineage = ()


class FlowResult(BaseModel):
    outputs: Dict[str, List[Any]] = Field(default_factory=dict)
    steps: int = 0
    visited: List[str] = Field(default_factory=list)


class Flow:
    """Validated flow definition"""

    def __init__(self, nodes: List[FlowNode], edges: List[FlowEdge]):
        self.nodes: Dict[str, FlowNode] = {}
        for node in nodes:
            if node.id in self.nodes:
                raise FlowValidationError(f"Duplicate node id '{node.id}'")
            self.nodes[node.id] = node
        self.edges = list(edges)
        self.order = self._validate()

    def outgoing(self, node_id: str, branch: Optional[bool] = None) -> List[FlowEdge]:
        return [
            edge for edge in self.edges
            if edge.source == node_id and (branch is None or edge.branch == branch)
        ]

    def _validate(self) -> List[str]:
        """Check node configuration and edges; return a topological order"""
        for node in self.nodes.values():
            if node.type in (NodeType.INPUT, NodeType.OUTPUT) and not node.name:
                raise FlowValidationError(f"Node '{node.id}' needs a name")
            if node.type in (NodeType.FUNCTION, NodeType.CONDITION) and node.handler is None:
                raise FlowValidationError(f"Node '{node.id}' needs a handler")
            if node.type == NodeType.PROMPT and not node.template:
                raise FlowValidationError(f"Node '{node.id}' needs a template")
            if node.type == NodeType.ITERATOR and node.max_items < 1:
                raise FlowValidationError(f"Iterator '{node.id}' needs max_items >= 1")

        if not any(n.type == NodeType.INPUT for n in self.nodes.values()):
            raise FlowValidationError("Flow has no input node")
        if not any(n.type == NodeType.OUTPUT for n in self.nodes.values()):
            raise FlowValidationError("Flow has no output node")

        in_degree = {node_id: 0 for node_id in self.nodes}
        for edge in self.edges:
            if edge.source not in self.nodes or edge.target not in self.nodes:
                raise FlowValidationError(f"Edge {edge.source} -> {edge.target} references an unknown node")
            source = self.nodes[edge.source]
            if source.type == NodeType.OUTPUT:
                raise FlowValidationError(f"Output node '{source.id}' cannot have outgoing edges")
            if self.nodes[edge.target].type == NodeType.INPUT:
                raise FlowValidationError(f"Input node '{edge.target}' cannot have incoming edges")
            if (source.type == NodeType.CONDITION) != (edge.branch is not None):
                raise FlowValidationError(
                    f"Edge {edge.source} -> {edge.target}: branch labels are required on "
                    "condition edges and only allowed there"
                )
            in_degree[edge.target] += 1

        # Kahn's algorithm
        ready = deque(node_id for node_id, degree in in_degree.items() if degree == 0)
        order: List[str] = []
        while ready:
            node_id = ready.popleft()
            order.append(node_id)
            for edge in self.outgoing(node_id):
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    ready.append(edge.target)

        if len(order) != len(self.nodes):
            cyclic = sorted(node_id for node_id, degree in in_degree.items() if degree > 0)
            raise FlowValidationError(f"Flow contains a cycle through: {', '.join(cyclic)}")
        return order


class FlowRunner:
    """Evaluates a Flow with a FIFO work list"""

    def __init__(
        self,
        flow: Flow,
        template_manager: Optional[TemplateManager] = None,
        model_invoker: Optional[ModelInvoker] = None,
        max_steps: int = 10_000,
    ):
        self.flow = flow
        self.template_manager = template_manager
        self.model_invoker = model_invoker
        self.max_steps = max_steps

        needs_model = any(n.type == NodeType.PROMPT for n in flow.nodes.values())
        if needs_model and (template_manager is None or model_invoker is None):
            raise FlowValidationError("Prompt nodes need a template manager and a model invoker")

    async def run(self, inputs: Dict[str, Any]) -> FlowResult:
        """
        Run the flow

        Raises:
            FlowExecutionError: A node failed, an input is missing or the step limit was hit
        """
        result = FlowResult()
        queue: Deque[_WorkItem] = deque()
        # collector id -> parent lineage -> {index: value} plus expected total
        buffers: Dict[str, Dict[Lineage, Tuple[int, Dict[int, Any]]]] = {}

        for node_id in self.flow.order:
            node = self.flow.nodes[node_id]
            if node.type != NodeType.INPUT:
                continue
            if node.name not in inputs:
                raise FlowExecutionError(node.id, f"missing input '{node.name}'")
            queue.append(_WorkItem(node.id, inputs[node.name]))

        while True:
            while queue:
                result.steps += 1
                if result.steps > self.max_steps:
                    raise FlowExecutionError("flow", f"exceeded {self.max_steps} steps")

                item = queue.popleft()
                node = self.flow.nodes[item.node_id]
                result.visited.append(node.id)
                for emitted in await self._step(node, item, buffers, result):
                    queue.append(emitted)

            # Branches dropped by a condition leave collectors partially filled
            flushed = self._flush_partial(buffers)
            if not flushed:
                break
            queue.extend(flushed)

        logger.info("Flow finished in %d steps", result.steps)
        return result

    async def _step(
        self,
        node: FlowNode,
        item: _WorkItem,
        buffers: Dict[str, Dict[Lineage, Tuple[int, Dict[int, Any]]]],
        result: FlowResult,
    ) -> List[_WorkItem]:
        if node.type == NodeType.INPUT:
            return self._emit(node, item.value, item.lineage)

        if node.type == NodeType.OUTPUT:
            result.outputs.setdefault(node.name, []).append(item.value)
            return []

        if node.type == NodeType.FUNCTION:
            value = await self._call(node, item.value)
            return self._emit(node, value, item.lineage)

        if node.type == NodeType.CONDITION:
            taken = bool(await self._call(node, item.value))
            return self._emit(node, item.value, item.lineage, branch=taken)

        if node.type == NodeType.PROMPT:
            value = await self._prompt(node, item.value)
            return self._emit(node, value, item.lineage)

        if node.type == NodeType.ITERATOR:
            if not isinstance(item.value, (list, tuple)):
                raise FlowExecutionError(node.id, f"expected a sequence, got {type(item.value).__name__}")
            if len(item.value) > node.max_items:
                raise FlowExecutionError(node.id, f"{len(item.value)} items exceed the limit of {node.max_items}")
            total = len(item.value)
            emitted: List[_WorkItem] = []
            for index, element in enumerate(item.value):
                emitted.extend(self._emit(node, element, item.lineage + ((node.id, index, total),)))
            return emitted

        if node.type == NodeType.COLLECTOR:
            if not item.lineage:
                return self._emit(node, [item.value], item.lineage)

            _, index, total = item.lineage[-1]
            parent = item.lineage[:-1]
            node_buffers = buffers.setdefault(node.id, {})
            _, values = node_buffers.setdefault(parent, (total, {}))
            values[index] = item.value
            if len(values) < total:
                return []
            del node_buffers[parent]
            return self._emit(node, [values[i] for i in sorted(values)], parent)

        raise FlowExecutionError(node.id, f"unknown node type {node.type}")

    def _emit(
        self,
        node: FlowNode,
        value: Any,
        lineage: Lineage,
        branch: Optional[bool] = None,
    ) -> List[_WorkItem]:
        return [_WorkItem(edge.target, value, lineage) for edge in self.flow.outgoing(node.id, branch)]

    def _flush_partial(
        self,
        buffers: Dict[str, Dict[Lineage, Tuple[int, Dict[int, Any]]]],
    ) -> List[_WorkItem]:
        """Release the earliest collector still holding values"""
        for node_id in self.flow.order:
            node_buffers = buffers.get(node_id)
            if not node_buffers:
                continue
            node = self.flow.nodes[node_id]
            emitted: List[_WorkItem] = []
            for parent, (total, values) in list(node_buffers.items()):
                logger.debug("Collector %s flushing %d/%d values", node_id, len(values), total)
                emitted.extend(self._emit(node, [values[i] for i in sorted(values)], parent))
            node_buffers.clear()
            return emitted or self._flush_partial(buffers)
        return []

    async def _call(self, node: FlowNode, value: Any) -> Any:
        try:
            if inspect.iscoroutinefunction(node.handler):
                return await node.handler(value)
            return node.handler(value)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise FlowExecutionError(node.id, f"{type(e).__name__}: {e}") from e

    async def _prompt(self, node: FlowNode, value: Any) -> str:
        variables = value if isinstance(value, dict) else {node.input_variable: value}
        try:
            resolved = await self.template_manager.resolve(node.template, variables, variant_name=node.variant)
            response = await self.model_invoker.invoke(ModelRequest(
                model_id=resolved.model_id,
                system_prompt=resolved.system_prompt,
                messages=[Message.text(Role.USER, resolved.text)],
                inference_config=resolved.inference_config,
            ))
        except ColloquyError as e:
            raise FlowExecutionError(node.id, str(e)) from e
        return response.message.text_content
