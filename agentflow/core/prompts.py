"""
Prompt templates used by the workflow engine.

All prompt templates are centralized here so workflows stay free of inline
strings. Use ``.format(**values)`` to fill them.
"""

# Worker prompt on iterations after the first: judge feedback is prefixed
FEEDBACK_REVISION_PROMPT = """Previous feedback: {feedback}

Please improve your response based on this feedback.

Original task:
{prompt}"""

# Judge prompt: the verdict is read from the structured "approved" field only
JUDGE_PROMPT = """Please evaluate the following output based on these criteria: {criteria}

Output to evaluate:
{output}

Respond with a JSON object of the form {{"approved": true|false, "feedback": "..."}}.
Set "approved" to true only if the output fully meets the criteria; otherwise list
the specific improvements needed in "feedback"."""
