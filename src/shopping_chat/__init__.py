"""Conversational shopping assistant: intent extraction, catalog recommendations, streamed chat turns."""
