"""
Planning strategies and plan execution.

Modules:
- models: plans, actions, observations and the execution context
- argument_resolver: {{step_id.result...}} argument templates
- plan_executor: PlanExecutor, wave-based DAG execution
- base_strategy: Planner interface
- react_strategy, plan_execute_strategy, reflexion_strategy,
  tree_of_thoughts_strategy: concrete planners
- planner_factory: PlannerFactory
- agent_tool: AgentTool, the think -> act -> observe loop
"""
