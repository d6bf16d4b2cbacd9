from automations.core.actions import UnknownAction, parse_action_config
from automations.core.events import parse_trigger_config
from automations.core.models import NodeKind


def validate_graph(definition: dict) -> list[str]:
    """Validate a workflow graph definition. Returns a list of errors (empty = valid)."""
    errors = []

    if not definition.get("tenant_id"):
        errors.append("Graph must have a 'tenant_id' field")

    nodes = definition.get("nodes")
    if not isinstance(nodes, list) or len(nodes) == 0:
        errors.append("'nodes' must be a non-empty list")
        return errors

    node_kinds = {}
    for node in nodes:
        if not node.get("id"):
            errors.append("Each node must have an 'id' field")
            continue
        if node["id"] in node_kinds:
            errors.append(f"Duplicate node ID: '{node['id']}'")
            continue

        kind = node.get("kind")
        node_kinds[node["id"]] = kind
        if kind == NodeKind.TRIGGER:
            if parse_trigger_config(node.get("config")) is None:
                errors.append(f"Trigger node '{node['id']}' has an invalid trigger config")
        elif kind == NodeKind.ACTION:
            parsed = parse_action_config(node.get("config"))
            if isinstance(parsed, UnknownAction):
                errors.append(
                    f"Action node '{node['id']}' has an invalid action config: {parsed.reason}"
                )
        else:
            errors.append(f"Node '{node['id']}' has unknown kind: '{kind}'")

    if NodeKind.TRIGGER not in node_kinds.values():
        errors.append("Graph must have at least one trigger node")

    for edge in definition.get("edges", []):
        for end in ("from_node_id", "to_node_id"):
            if edge.get(end) not in node_kinds:
                errors.append(
                    f"Edge {edge.get('from_node_id')!r} -> {edge.get('to_node_id')!r} "
                    f"references unknown node: {edge.get(end)!r}"
                )
        if node_kinds.get(edge.get("to_node_id")) == NodeKind.TRIGGER:
            errors.append(f"Edge into trigger node '{edge['to_node_id']}' is not allowed")

    if not errors and _has_cycle(node_kinds, definition.get("edges", [])):
        errors.append("Graph contains a cycle")

    return errors


def _has_cycle(node_ids, edges: list[dict]) -> bool:
    """Detect cycles using DFS with three-color marking."""
    adj = {nid: [] for nid in node_ids}
    for edge in edges:
        adj[edge["from_node_id"]].append(edge["to_node_id"])
    WHITE, GRAY, BLACK = 0, 1, 2
    color = {nid: WHITE for nid in adj}

    def dfs(node):
        color[node] = GRAY
        for neighbor in adj[node]:
            if color[neighbor] == GRAY:
                return True
            if color[neighbor] == WHITE and dfs(neighbor):
                return True
        color[node] = BLACK
        return False

    for node in adj:
        if color[node] == WHITE:
            if dfs(node):
                return True
    return False
