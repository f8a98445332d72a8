"""Core domain package for courier.

Core contains the message model, workflow definitions, consolidation, the
command layer and the workflow runner without any email, Telegram or
language-model specific code, keeping the orchestration portable.
"""
