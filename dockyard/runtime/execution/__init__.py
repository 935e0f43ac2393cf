"""Workflow execution for the runtime.

- **prompts**: Step prompt lookup and rendering (Jinja2 templates)
- **completion**: Completion client protocol and the pydantic-ai client
- **notify**: Fire-and-log user notifications
- **coordinator**: Run guard, step execution and run records
- **recovery**: Startup reconciliation of abandoned runs
- **tasks**: Outermost task boundary (lock -> workspace -> run)
"""
