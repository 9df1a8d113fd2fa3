"""User-visible texts posted by the worker."""

THINKING_SENTINEL = "Thinking..."

ERROR_WARNING = "⚠️ Sorry, I hit an error tracking down the docs. Please try again."

INCOMPLETE_NOTE = "\n\n(Note: This response may be incomplete due to a processing error.)"

TEST_QUESTION = (
    "Test message from force-worker endpoint. "
    "If you see this, the queue and worker are functioning correctly."
)
