"""Agent bridge: interpreter, executor, formatter and orchestration loop."""
