"""
Reasoner interface and adapters.

Modules:
- reasoner: Reasoner protocol and the models exchanged with it
- llm_reasoner: LLMReasoner, an OpenAI-backed Reasoner
"""
