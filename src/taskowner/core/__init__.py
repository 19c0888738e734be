"""taskowner core: ownership orchestration, conversation state, follow-ups."""
