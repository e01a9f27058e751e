"""Research graph assistant: plans grounded next steps and stages them as ghost proposals."""
