"""
Tool definitions and the ToolEngine.

Modules:
- base_tool: BaseTool and the create_fn_tool / create_tool decorators
- models: ToolCall, ToolResult and related data models
- tool_engine: ToolEngine (single, parallel, sequential, conditional execution)
- hooks: ExecutionHooks observer interface
"""
