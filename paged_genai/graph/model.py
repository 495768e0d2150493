"""
paged-genai :: Graph IR

Minimal mutable model graph used by the paged-attention rewrite and by the
tokenizer/detokenizer graphs.

  - Parameter: named graph input (element type + partial shape)
  - Variable:  state that persists across infer calls (ReadValue/Assign)
  - Node:      one op instance, values referenced by name
  - rt_info:   free-form run-time metadata carried with the graph

Element types are torch dtypes, the STRING marker, or None (dynamic,
left for the backend to choose).

INL - 2025
"""

import torch
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union
from dataclasses import dataclass, field

STRING = "string"

ElementType = Union[torch.dtype, str, None]


class PartialShape:
    """
    Shape whose rank and/or dims may be unknown.

        PartialShape([None, 8, 64])   → [?,8,64]
        PartialShape.dynamic(4)       → [?,?,?,?]
        PartialShape.dynamic()        → dynamic rank
    """

    def __init__(self, dims: Optional[Sequence[Optional[int]]] = None):
        if dims is None:
            self._dims = None
        else:
            self._dims = tuple(None if d is None or d < 0 else int(d) for d in dims)

    @staticmethod
    def dynamic(rank: Optional[int] = None) -> "PartialShape":
        if rank is None:
            return PartialShape(None)
        return PartialShape([None] * rank)

    @property
    def rank(self) -> Optional[int]:
        return None if self._dims is None else len(self._dims)

    @property
    def is_static(self) -> bool:
        return self._dims is not None and all(d is not None for d in self._dims)

    @property
    def is_fully_dynamic(self) -> bool:
        return self._dims is None or all(d is None for d in self._dims)

    def __getitem__(self, idx: int) -> Optional[int]:
        if self._dims is None:
            return None
        return self._dims[idx]

    def __iter__(self) -> Iterator[Optional[int]]:
        if self._dims is None:
            raise TypeError("Cannot iterate over a shape of dynamic rank")
        return iter(self._dims)

    def __len__(self) -> int:
        if self._dims is None:
            raise TypeError("Shape of dynamic rank has no length")
        return len(self._dims)

    def __eq__(self, other) -> bool:
        if isinstance(other, (list, tuple)):
            other = PartialShape(other)
        return isinstance(other, PartialShape) and self._dims == other._dims

    def __hash__(self) -> int:
        return hash(self._dims)

    def __repr__(self) -> str:
        if self._dims is None:
            return "[...]"
        return "[" + ",".join("?" if d is None else str(d) for d in self._dims) + "]"

    def compatible(self, other: "PartialShape") -> bool:
        """True if some static shape satisfies both."""
        if self._dims is None or other._dims is None:
            return True
        if len(self._dims) != len(other._dims):
            return False
        return all(a is None or b is None or a == b for a, b in zip(self._dims, other._dims))


def merge_element_types(a: ElementType, b: ElementType) -> ElementType:
    """Unify two element types; None (dynamic) unifies with anything."""
    if a is None:
        return b
    if b is None or a == b:
        return a
    raise ValueError(f"Incompatible element types: {a} vs {b}")


@dataclass
class TensorSpec:
    element_type: ElementType
    shape: PartialShape

    def __repr__(self) -> str:
        return f"TensorSpec({self.element_type}, {self.shape})"


class Parameter:
    """Graph input. friendly_name doubles as the value name inside the graph."""

    def __init__(self, friendly_name: str, element_type: ElementType, shape):
        self.friendly_name = friendly_name
        self.element_type = element_type
        self.shape = shape if isinstance(shape, PartialShape) else PartialShape(shape)

    def set_element_type(self, element_type: ElementType):
        self.element_type = element_type

    def set_partial_shape(self, shape):
        self.shape = shape if isinstance(shape, PartialShape) else PartialShape(shape)

    @property
    def spec(self) -> TensorSpec:
        return TensorSpec(self.element_type, self.shape)

    def __repr__(self) -> str:
        return f"Parameter({self.friendly_name}, {self.element_type}, {self.shape})"


class Variable:
    """Graph state. initial_value is what a fresh (or reset) request holds."""

    def __init__(
        self,
        variable_id: str,
        element_type: ElementType,
        shape,
        initial_value: Optional[torch.Tensor] = None,
    ):
        self.variable_id = variable_id
        self.element_type = element_type
        self.shape = shape if isinstance(shape, PartialShape) else PartialShape(shape)
        self.initial_value = initial_value

    @property
    def spec(self) -> TensorSpec:
        return TensorSpec(self.element_type, self.shape)

    def __repr__(self) -> str:
        return f"Variable({self.variable_id}, {self.element_type}, {self.shape})"


@dataclass
class Node:
    name: str
    op_type: str
    inputs: List[str]
    outputs: List[str]
    attrs: Dict[str, Any] = field(default_factory=dict)


class ModelGraph:
    """
    Mutable model graph.

    Nodes are kept in topological order: every node's inputs are either
    parameters or outputs of an earlier node. Passes that replace a node
    keep its position.
    """

    def __init__(self, name: str = "model"):
        self.name = name
        self._parameters: Dict[str, Parameter] = {}
        self._variables: Dict[str, Variable] = {}
        self.nodes: List[Node] = []
        self.results: List[str] = []
        self.rt_info: Dict[str, Any] = {}
        self._specs: Dict[str, TensorSpec] = {}

    # -----------------------------------------------------------------
    # Parameters / variables
    # -----------------------------------------------------------------

    def add_parameter(self, param: Parameter) -> Parameter:
        if param.friendly_name in self._parameters:
            raise ValueError(f"Duplicate parameter: {param.friendly_name}")
        self._parameters[param.friendly_name] = param
        return param

    def get_parameters(self) -> List[Parameter]:
        return list(self._parameters.values())

    def get_parameter(self, name: str) -> Parameter:
        if name not in self._parameters:
            raise KeyError(f"No parameter named {name!r} in {self.name}")
        return self._parameters[name]

    def has_parameter(self, name: str) -> bool:
        return name in self._parameters

    def add_variable(self, variable: Variable) -> Variable:
        if variable.variable_id in self._variables:
            raise ValueError(f"Duplicate variable: {variable.variable_id}")
        self._variables[variable.variable_id] = variable
        return variable

    def remove_variable(self, variable_id: str):
        self._variables.pop(variable_id)

    def get_variables(self) -> List[Variable]:
        return list(self._variables.values())

    def get_variable(self, variable_id: str) -> Variable:
        if variable_id not in self._variables:
            raise KeyError(f"No variable named {variable_id!r} in {self.name}")
        return self._variables[variable_id]

    def has_variable(self, variable_id: str) -> bool:
        return variable_id in self._variables

    # -----------------------------------------------------------------
    # Nodes
    # -----------------------------------------------------------------

    def add_node(self, node: Node, index: Optional[int] = None) -> Node:
        if any(n.name == node.name for n in self.nodes):
            raise ValueError(f"Duplicate node: {node.name}")
        if index is None:
            self.nodes.append(node)
        else:
            self.nodes.insert(index, node)
        return node

    def remove_node(self, name: str):
        self.nodes = [n for n in self.nodes if n.name != name]

    def replace_node(self, name: str, new_node: Node):
        for i, node in enumerate(self.nodes):
            if node.name == name:
                self.nodes[i] = new_node
                return
        raise KeyError(f"No node named {name!r} in {self.name}")

    def get_ordered_ops(self) -> List[Node]:
        return list(self.nodes)

    def producer_of(self, value: str) -> Optional[Node]:
        for node in self.nodes:
            if value in node.outputs:
                return node
        return None

    def add_result(self, value: str):
        if value not in self.results:
            self.results.append(value)

    # -----------------------------------------------------------------
    # rt_info
    # -----------------------------------------------------------------

    def has_rt_info(self, key: str) -> bool:
        return key in self.rt_info

    # -----------------------------------------------------------------
    # Type / shape inference
    # -----------------------------------------------------------------

    def validate_nodes_and_infer_types(self):
        """
        Re-run inference over the whole graph.

        Raises ValueError on a dangling input, an unknown op, or an op
        rejecting its input types/shapes.
        """
        from paged_genai.graph.ops import get_op

        specs: Dict[str, TensorSpec] = {p.friendly_name: p.spec for p in self._parameters.values()}
        for node in self.nodes:
            missing = [i for i in node.inputs if i not in specs]
            if missing:
                raise ValueError(f"Node {node.name} ({node.op_type}) has undefined inputs: {missing}")
            op = get_op(node.op_type)
            try:
                out_specs = op.infer(self, node, [specs[i] for i in node.inputs])
            except ValueError as e:
                raise ValueError(f"Node {node.name} ({node.op_type}): {e}") from e
            if len(out_specs) != len(node.outputs):
                raise ValueError(
                    f"Node {node.name} ({node.op_type}) produced {len(out_specs)} outputs, "
                    f"declares {len(node.outputs)}"
                )
            specs.update(zip(node.outputs, out_specs))

        undefined = [r for r in self.results if r not in specs]
        if undefined:
            raise ValueError(f"Graph {self.name} has undefined results: {undefined}")
        self._specs = specs

    def spec_of(self, value: str) -> TensorSpec:
        """Spec from the last validate_nodes_and_infer_types() call."""
        if value not in self._specs:
            raise KeyError(f"No inferred spec for {value!r} (run validate_nodes_and_infer_types)")
        return self._specs[value]

    def __repr__(self) -> str:
        return (
            f"ModelGraph({self.name}: {len(self._parameters)} params, "
            f"{len(self._variables)} variables, {len(self.nodes)} nodes)"
        )
