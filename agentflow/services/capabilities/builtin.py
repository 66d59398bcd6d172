"""Built-in capabilities: echo, calculate, transform_data and make_api_call.

These are optional; call ``register_builtin_capabilities(registry)`` to make
them available to agents.
"""

import ast
import csv
import io
import json
import logging
import operator
import statistics
from typing import Any, Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from agentflow.services.capabilities.base import Capability
from agentflow.services.capabilities.registry import CapabilityRegistry

logger = logging.getLogger(__name__)


# ============= ECHO =============


class EchoArgs(BaseModel):
    """Accepts any keyword arguments."""

    model_config = ConfigDict(extra="allow")


def echo(args: EchoArgs) -> Dict[str, Any]:
    return args.model_dump()


# ============= CALCULATION =============


class CalculateArgs(BaseModel):
    expression: str = Field("", description="Arithmetic expression for the basic operation")
    operation: Literal["basic", "statistical"] = "basic"
    data: Optional[List[float]] = Field(None, description="Numbers for statistical operations")


# Bounds that keep ``**`` from pinning a worker on inputs like 9**9**9
MAX_EXPONENT = 1000
MAX_RESULT_BITS = 4096


def _safe_pow(base: float, exponent: float) -> float:
    if abs(exponent) > MAX_EXPONENT:
        raise ValueError(f"Exponent {exponent} exceeds the limit of {MAX_EXPONENT}")
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
        if abs(base).bit_length() * exponent > MAX_RESULT_BITS:
            raise ValueError(f"Result of {base}**{exponent} would exceed {MAX_RESULT_BITS} bits")
    try:
        result = operator.pow(base, exponent)
    except (OverflowError, ZeroDivisionError) as e:
        raise ValueError(f"Cannot evaluate {base}**{exponent}: {e}") from e
    if isinstance(result, complex):
        raise ValueError(f"{base}**{exponent} has no real result")
    return result


_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _safe_pow,
}

_UNARY_OPERATORS = {
    ast.UAdd: operator.pos,
    ast.USub: operator.neg,
}


def evaluate_expression(expression: str) -> float:
    """Evaluate an arithmetic expression without ``eval``.

    Only numeric literals, parentheses and + - * / // % ** are accepted.

    Raises:
        ValueError: If the expression contains anything else
    """
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Invalid expression: {expression!r}") from e
    return _evaluate_node(tree.body)


def _evaluate_node(node: ast.AST) -> float:
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPERATORS:
        return _BINARY_OPERATORS[type(node.op)](_evaluate_node(node.left), _evaluate_node(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPERATORS:
        return _UNARY_OPERATORS[type(node.op)](_evaluate_node(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


def calculate(args: CalculateArgs) -> Dict[str, Any]:
    if args.operation == "basic":
        return {"result": evaluate_expression(args.expression), "expression": args.expression}

    if not args.data:
        raise ValueError("Statistical operation requires a non-empty 'data' list")
    data = args.data
    return {
        "mean": statistics.fmean(data),
        "median": statistics.median(data),
        "variance": statistics.pvariance(data),
        "standard_deviation": statistics.pstdev(data),
        "min": min(data),
        "max": max(data),
        "count": len(data),
    }


# ============= DATA TRANSFORMATION =============


class TransformDataArgs(BaseModel):
    data: Any = Field(..., description="Input data to transform")
    from_format: Literal["json", "csv"]
    to_format: Literal["json", "csv", "markdown"]
    pretty: bool = False


def _parse_input(data: Any, from_format: str) -> Any:
    if from_format == "json":
        return json.loads(data) if isinstance(data, str) else data
    reader = csv.DictReader(io.StringIO(str(data).strip()))
    return [{key.strip(): (value or "").strip() for key, value in row.items()} for row in reader]


def transform_data(args: TransformDataArgs) -> Dict[str, Any]:
    parsed = _parse_input(args.data, args.from_format)

    if args.to_format == "json":
        result = json.dumps(parsed, indent=2 if args.pretty else None)
    elif not (isinstance(parsed, list) and parsed and isinstance(parsed[0], dict)):
        if args.to_format == "csv":
            result = ""
        else:
            result = "```json\n" + json.dumps(parsed, indent=2) + "\n```"
    elif args.to_format == "csv":
        headers = list(parsed[0].keys())
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=headers, extrasaction="ignore", lineterminator="\n")
        writer.writeheader()
        writer.writerows(parsed)
        result = buffer.getvalue().rstrip("\n")
    else:
        headers = list(parsed[0].keys())
        lines = [
            "| " + " | ".join(headers) + " |",
            "| " + " | ".join("---" for _ in headers) + " |",
        ]
        lines.extend(
            "| " + " | ".join(str(row.get(h, "")) for h in headers) + " |" for row in parsed
        )
        result = "\n".join(lines)

    return {"result": result, "format": args.to_format}


# ============= API CALLING =============


class ApiCallArgs(BaseModel):
    url: HttpUrl = Field(..., description="The API endpoint URL")
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    query_params: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = Field(None, description="Request body (sent as JSON)")


async def make_api_call(args: ApiCallArgs, timeout: float = 30.0) -> Dict[str, Any]:
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0)) as client:
        response = await client.request(
            args.method,
            str(args.url),
            headers=args.headers,
            params=args.query_params,
            json=args.body,
        )

    try:
        data: Any = response.json()
    except ValueError:
        data = response.text

    logger.info(f"API call {args.method} {args.url} -> {response.status_code}")
    return {
        "status": response.status_code,
        "status_text": response.reason_phrase,
        "data": data,
        "headers": dict(response.headers),
    }


# ============= REGISTRATION =============

BUILTIN_CAPABILITIES = (
    Capability("echo", "Return the given arguments unchanged", EchoArgs, echo),
    Capability(
        "calculate",
        "Perform arithmetic calculations and basic statistics",
        CalculateArgs,
        calculate,
    ),
    Capability(
        "transform_data",
        "Transform data between JSON, CSV and Markdown table formats",
        TransformDataArgs,
        transform_data,
    ),
    Capability(
        "make_api_call",
        "Make HTTP API calls to external services",
        ApiCallArgs,
        make_api_call,
    ),
)


def register_builtin_capabilities(registry: CapabilityRegistry) -> CapabilityRegistry:
    """Register every built-in capability that is not registered yet."""
    for capability in BUILTIN_CAPABILITIES:
        if capability.name not in registry:
            registry.register(capability)
    return registry
