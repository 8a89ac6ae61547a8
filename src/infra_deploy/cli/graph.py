"""Rendering of module dependency graphs."""

from typing import List, Optional, Set

from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from infra_deploy.orchestrator.dependency_graph import DependencyGraph
from infra_deploy.state.models import ModuleId


def render_tree(console: Console, graph: DependencyGraph, environment: str) -> None:
    """Output dependency graph as a tree, producers at the roots."""
    console.print(Panel(f"Module Dependency Graph - Environment: {environment}", style="bold blue"))
    console.print()

    roots = [m.id for m in graph.modules if not graph.get_dependencies(m.id)]
    if not roots:
        console.print("[dim]No modules found[/dim]")
        return

    for root in roots:
        tree = Tree(f"[bold cyan]{root.path}[/bold cyan]")
        _build_tree_recursive(tree, root, graph, set())
        console.print(tree)
        console.print()


def _build_tree_recursive(tree: Tree, module_id: ModuleId, graph: DependencyGraph, visited: Set[ModuleId]):
    """Recursively build tree structure."""
    visited.add(module_id)
    for dependent in sorted(graph.get_dependents(module_id), key=graph.index_of):
        if dependent in visited:
            continue
        branch = tree.add(f"[cyan]{dependent.path}[/cyan]")
        _build_tree_recursive(branch, dependent, graph, visited.copy())


def render_waves(console: Console, graph: DependencyGraph, environment: str) -> None:
    """Output dependency graph level by level."""
    console.print(Panel(f"Execution Order - Environment: {environment}", style="bold blue"))
    console.print()

    for level, modules in enumerate(graph.waves()):
        console.print(f"[bold]Level {level}:[/bold]")
        for module in modules:
            deps = sorted(d.path for d in graph.get_dependencies(module.id))
            if deps:
                console.print(f"  ├─ [cyan]{module.path}[/cyan] [dim]← depends on: {', '.join(deps)}[/dim]")
            else:
                console.print(f"  ├─ [cyan]{module.path}[/cyan]")
        console.print()


def generate_dot(graph: DependencyGraph, environment: str, highlight: Optional[List[str]] = None) -> str:
    """Generate DOT format graph; edges point from producer to consumer."""
    highlight = set(highlight or [])
    lines = [
        'digraph ModuleDependencies {',
        '  rankdir=TB;',
        '  node [shape=box, style=rounded, fontname="Arial"];',
        '  edge [fontname="Arial"];',
        '',
        '  labelloc="t";',
        f'  label="Module Dependencies\\n{environment}";',
        '',
    ]

    for module in graph.modules:
        color = "#FF9900" if module.path in highlight else "#CCCCCC"
        lines.append(f'  "{module.path}" [fillcolor="{color}", style="filled,rounded"];')

    lines.append('')

    for module in graph.modules:
        for edge in graph.edges_of(module.id):
            label = f' [label="{edge.output_key}"]' if edge.output_key else ''
            lines.append(f'  "{edge.producer.path}" -> "{module.path}"{label};')

    lines.append('}')

    return '\n'.join(lines)
