"""
paged-genai :: Compute Backend

Compiles a ModelGraph and runs it on CPU by walking its nodes through the
op registry's evaluate() kernels.

    context = BackendContext()
    compiled = context.compile_model(graph)              # handle factory
    request = compiled.create_infer_request()            # one handle
    request.set_input_tensor(0, ["hello"])
    request.infer()
    request.get_tensor("input_ids")

A BackendContext is created and owned by the application and passed to
whatever compiles models; there is no process-wide instance.

INL - 2025
"""

import torch
from typing import Any, Dict, List, Optional, Union

from paged_genai.core.config import RuntimeConfig
from paged_genai.core.logging import get_logger
from paged_genai.graph.model import ModelGraph, PartialShape, Variable
from paged_genai.graph.ops import get_op

logger = get_logger("paged_genai.backend")

SUPPORTED_DEVICES = ("CPU",)


class VariableState:
    """Per-request value of one graph variable."""

    def __init__(self, variable: Variable):
        self._variable = variable
        self._value: Any = None
        self.reset()

    @property
    def name(self) -> str:
        return self._variable.variable_id

    @property
    def element_type(self):
        return self._variable.element_type

    def get_state(self) -> Any:
        return self._value

    def set_state(self, value: Any):
        dtype = self._variable.element_type
        if not isinstance(value, torch.Tensor):
            value = torch.tensor(value, dtype=dtype)
        elif dtype is not None and value.dtype != dtype:
            value = value.to(dtype)
        if not self._variable.shape.compatible(PartialShape(list(value.shape))):
            raise ValueError(
                f"State {self.name}: value of shape {list(value.shape)} "
                f"does not fit {self._variable.shape}"
            )
        self._value = value.clone()

    def reset(self):
        initial = self._variable.initial_value
        self._value = None if initial is None else initial.clone()

    def __repr__(self) -> str:
        return f"VariableState({self.name}={self._value})"


class InferRequest:
    """
    One execution handle: its own input/output tensors and variable states.
    Not thread-safe; hand it to one caller at a time.
    """

    def __init__(self, compiled: "CompiledModel"):
        self._compiled = compiled
        self._inputs: Dict[str, Any] = {}
        self._outputs: Dict[str, Any] = {}
        self._states: Dict[str, VariableState] = {
            v.variable_id: VariableState(v) for v in compiled.graph.get_variables()
        }

    def _input_name(self, key: Union[int, str]) -> str:
        names = self._compiled.inputs
        if isinstance(key, int):
            if not 0 <= key < len(names):
                raise IndexError(f"Input index {key} out of range (model has {len(names)} inputs)")
            return names[key]
        if key not in names:
            raise KeyError(f"No input named {key!r}. Inputs: {names}")
        return key

    def set_input_tensor(self, key: Union[int, str], value: Any):
        self._inputs[self._input_name(key)] = value

    def set_tensor(self, name: str, value: Any):
        self.set_input_tensor(name, value)

    def get_tensor(self, name: str) -> Any:
        if name in self._outputs:
            return self._outputs[name]
        if name in self._inputs:
            return self._inputs[name]
        raise KeyError(f"No tensor named {name!r} (did infer() run?)")

    def get_output_tensor(self, idx: int = 0) -> Any:
        return self.get_tensor(self._compiled.outputs[idx])

    def infer(self):
        missing = [n for n in self._compiled.inputs if n not in self._inputs]
        if missing:
            raise RuntimeError(f"Input tensors not set: {missing}")

        values: Dict[str, Any] = dict(self._inputs)
        for node in self._compiled.program:
            op = get_op(node.op_type)
            out = op.evaluate(node, [values[i] for i in node.inputs], self)
            values.update(zip(node.outputs, out))
        self._outputs = {name: values[name] for name in self._compiled.outputs}

    # -----------------------------------------------------------------
    # State
    # -----------------------------------------------------------------

    def query_state(self) -> List[VariableState]:
        return list(self._states.values())

    def read_state(self, variable_id: str) -> Any:
        return self._states[variable_id].get_state()

    def assign_state(self, variable_id: str, value: Any):
        self._states[variable_id].set_state(value)

    def reset_state(self):
        for state in self._states.values():
            state.reset()

    def get_compiled_model(self) -> "CompiledModel":
        return self._compiled


class CompiledModel:
    """Validated, executable graph. Creates infer requests."""

    def __init__(self, graph: ModelGraph, device: str, properties: Dict[str, Any]):
        graph.validate_nodes_and_infer_types()
        not_evaluable = sorted({n.op_type for n in graph.nodes if not get_op(n.op_type).evaluable})
        if not_evaluable:
            raise RuntimeError(
                f"Cannot compile {graph.name} for {device}: no CPU kernel for {', '.join(not_evaluable)}"
            )
        self.graph = graph
        self.device = device
        self.program = graph.get_ordered_ops()
        self.inputs = [p.friendly_name for p in graph.get_parameters()]
        self.outputs = list(graph.results)
        self._properties = dict(properties)

    @property
    def optimal_number_of_infer_requests(self) -> int:
        return self._properties["num_requests"]

    @property
    def rt_info(self) -> Dict[str, Any]:
        return dict(self.graph.rt_info)

    def get_property(self, name: str) -> Any:
        if name not in self._properties:
            raise KeyError(f"Unknown property {name!r}. Known: {sorted(self._properties)}")
        return self._properties[name]

    def create_infer_request(self) -> InferRequest:
        return InferRequest(self)

    def __repr__(self) -> str:
        return f"CompiledModel({self.graph.name} on {self.device})"


class BackendContext:
    """
    Owns device selection and compile defaults.

    Args:
        config: RuntimeConfig (default: from environment)
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig.from_env()

    def compile_model(
        self,
        graph: ModelGraph,
        device: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None,
    ) -> CompiledModel:
        device = (device or self.config.device).upper()
        if device not in SUPPORTED_DEVICES:
            raise RuntimeError(f"Device {device} is not supported. Available: {', '.join(SUPPORTED_DEVICES)}")

        props = {"num_requests": self.config.optimal_num_requests}
        props.update(properties or {})
        if int(props["num_requests"]) < 1:
            raise ValueError(f"num_requests must be >= 1, got {props['num_requests']}")
        props["num_requests"] = int(props["num_requests"])

        compiled = CompiledModel(graph, device, props)
        logger.debug(f"Compiled {graph.name} on {device}: {props}")
        return compiled
