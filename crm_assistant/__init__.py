"""CRM Assistant — an AI assistant for real-estate agents.

Architecture Overview
=====================

The assistant is a tool-calling loop built as a **LangGraph** state machine
(``agent.py``):

1. **build_request** — system prompt with a snapshot of the agent's
   business data, the recent conversation and the new message.
2. **await_provider** — one round-trip to the configured LLM through a
   ``ProviderAdapter``. The model answers in text or asks for tools.
3. **execute_tools** — runs the requested tools one after another; each
   result (success or failure) is fed back to the model.

Routing: await_provider → (tool calls?) → execute_tools → await_provider
(loop until plain text → DONE, or the turn bound / a provider error → FAILED)

Key Design Decisions
--------------------
- **Provider-neutral core**: messages, tool calls and results are plain
  dataclasses (``models.py``). Anthropic (via LangChain), OpenAI and Gemini
  adapters translate them to each wire format.
- **Failure isolation**: a tool that raises becomes a failed tool result
  the model can react to; it never aborts the conversation.
- **Guardrail**: at most ``MAX_TOOL_TURNS`` provider round-trips per
  request, then a fixed apology.
- **Auditability**: every tool execution is logged on
  ``crm_assistant.audit``; the in-memory store also records each mutation.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``crm_assistant/agent.py`` — ConversationOrchestrator (LangGraph StateGraph)
- ``crm_assistant/chat.py`` — per-request pipeline and composition root
- ``crm_assistant/config.py`` — configuration from environment variables / SSM
- ``crm_assistant/models.py`` — neutral message and tool types
- ``crm_assistant/prompts.py`` — system prompt
- ``crm_assistant/server.py`` / ``main.py`` — FastAPI app and CLI
- ``crm_assistant/providers/`` — LLM provider adapters
- ``crm_assistant/services/`` — data store, history, context, briefings, notifications, metrics
- ``crm_assistant/tools/`` — tool registry, executor and the CRM tool handlers
- ``crm_assistant/api/`` — FastAPI routes and Pydantic schemas
"""
