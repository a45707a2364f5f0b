"""Request/response loop of an interactive coding agent.

One task alternates between model requests and tool execution until the
agent completes the task, the operator declines a retry, or the task is
aborted. The package splits that loop into narrow components:

- `parser` turns the streamed assistant text into text and tool blocks.
- `stream` consumes backend events, throttles operator notifications and
  reacts to preemption (abort, rejected tool, tool already used).
- `presenter` presents blocks strictly in order through a single consumer,
  so tool execution never overlaps with itself.
- `retry`, `limits` and `checkpoints` hold the first-chunk retry policy,
  the operator-facing ceilings and the first-request checkpoint.
- `task` and `lifecycle` tie them together into the task loop.

Everything external (model backend, tools, history storage, operator UI)
is injected through the protocols in `interfaces` and `messages`.
"""
