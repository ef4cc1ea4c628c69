"""
RPA Workflow Engine

Executes robotic-process-automation workflows described as node/edge graphs:
- Graph interpretation with decision branching
- Browser automation over a single long-lived Playwright session
- API calls, delays and sandboxed scripts
- Pluggable orchestration backends (in-process or Temporal)
"""

__version__ = "0.1.0"
