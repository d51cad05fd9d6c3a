"""
HTML + Mermaid plan report generator.
"""
from datetime import datetime, timezone
from typing import Optional

from jinja2 import Environment

from stackplan import __version__
from stackplan.graph.builder import ResourceGraph
from stackplan.models.plan import Plan
from stackplan.reporters import markdown

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Execution Plan - stackplan</title>
    <script src="https://cdn.jsdelivr.net/npm/mermaid/dist/mermaid.min.js"></script>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 1200px; margin: 0 auto; padding: 2rem; background: #f9f9f9; }
        header { border-bottom: 2px solid #ddd; margin-bottom: 2rem; padding-bottom: 1rem; }
        h1 { color: #1565c0; margin-bottom: 0; }
        .meta { color: #666; font-size: 0.9rem; margin-bottom: 2rem; }
        .summary-cards { display: grid; grid-template-columns: repeat(auto-fit, minmax(150px, 1fr)); gap: 1rem; margin-bottom: 2rem; }
        .card { background: white; padding: 1rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); text-align: center; border-left: 5px solid #ddd; }
        .card.create { border-left-color: #4caf50; }
        .card.update { border-left-color: #ffc107; }
        .card.replace { border-left-color: #ff9800; }
        .card.destroy { border-left-color: #f44336; }
        .card-num { font-size: 2rem; font-weight: bold; margin-bottom: 0.2rem; }
        .card-label { color: #666; font-size: 0.8rem; text-transform: uppercase; }
        .mermaid-container { background: white; padding: 2rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); margin-bottom: 2rem; overflow-x: auto; }
        .plan-table { width: 100%; border-collapse: collapse; background: white; border-radius: 8px; overflow: hidden; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
        .plan-table th, .plan-table td { padding: 1rem; text-align: left; border-bottom: 1px solid #eee; vertical-align: top; }
        .plan-table th { background: #f5f5f5; font-weight: 600; }
        .action { font-weight: bold; padding: 0.2rem 0.5rem; border-radius: 4px; font-size: 0.8rem; }
        .act-create { background: #e8f5e9; color: #2e7d32; }
        .act-update { background: #fffde7; color: #f9a825; }
        .act-replace { background: #fff3e0; color: #ef6c00; }
        .act-destroy { background: #ffebee; color: #c62828; }
        .attrs { background: #f5f5f5; font-family: monospace; padding: 0.5rem 1rem; border-radius: 4px; white-space: pre-wrap; font-size: 0.85rem; }
        footer { margin-top: 4rem; text-align: center; color: #999; font-size: 0.8rem; }
    </style>
</head>
<body>
    <header>
        <h1>Execution Plan</h1>
        <div class="meta">Generated: {{ generated }} | Source: {{ source }} | stackplan v{{ version }}</div>
    </header>

    <div class="summary-cards">
        <div class="card create"><div class="card-num">{{ counts.create }}</div><div class="card-label">create</div></div>
        <div class="card update"><div class="card-num">{{ counts.update }}</div><div class="card-label">update</div></div>
        <div class="card replace"><div class="card-num">{{ counts.replace }}</div><div class="card-label">replace</div></div>
        <div class="card destroy"><div class="card-num">{{ counts.destroy }}</div><div class="card-label">destroy</div></div>
    </div>

    {% if mermaid %}
    <h2>Dependency Graph</h2>
    <div class="mermaid-container">
        <div class="mermaid">
{{ mermaid }}
        </div>
    </div>
    {% endif %}

    <h2>Actions</h2>
    {% if plan.is_empty %}
    <p>No changes. Infrastructure matches the declarations.</p>
    {% else %}
    <table class="plan-table">
        <thead>
            <tr>
                <th>#</th>
                <th>Layer</th>
                <th>Action</th>
                <th>Resource</th>
                <th>Attributes</th>
            </tr>
        </thead>
        <tbody>
            {% for a in plan.actions %}
            <tr>
                <td>{{ loop.index }}</td>
                <td>{{ a.layer }}</td>
                <td><span class="action act-{{ a.label }}">{{ a.label }}</span></td>
                <td><strong>{{ a.key }}</strong><div style="font-size: 0.85rem; color: #666;">{{ a.kind.value }}</div></td>
                <td>
                    {% if a.changed %}<div style="font-size: 0.85rem; color: #666;"><strong>Changed:</strong> {{ a.changed | join(", ") }}</div>{% endif %}
                    <div class="attrs">{% for k, v in a.preview.items() %}{{ k }} = {{ v }}
{% endfor %}</div>
                </td>
            </tr>
            {% endfor %}
        </tbody>
    </table>
    {% endif %}

    <footer>
        stackplan - dependency-aware declarative resource orchestrator
    </footer>

    <script>
        mermaid.initialize({ startOnLoad: true, theme: 'neutral', securityLevel: 'loose' });
    </script>
</body>
</html>
"""

def build_report(plan: Plan, graph: Optional[ResourceGraph], source_path: str) -> str:
    mermaid = markdown.build_mermaid(graph, plan) if graph is not None and len(graph) else ""

    env = Environment(autoescape=True)
    template = env.from_string(_HTML_TEMPLATE)

    return template.render(
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        plan=plan,
        counts=plan.counts(),
        mermaid=mermaid,
    )
