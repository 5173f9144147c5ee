"""Test-generation pipeline driven by an external CLI coding agent.

Why threads and not asyncio?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The pipeline is strictly sequential: perspectives, generation, test
execution, report. The only concurrency is the agent child process itself,
whose stdout is pumped on a reader thread and turned into events. A bounded
wait over ``threading.Event`` covers the "agent never completes" case,
while cancellation is polled between phases. An event loop would add
nothing but colouring to every call site.

Agent output is free-form text that frequently wraps, truncates or
decorates the JSON payloads we ask for, so every payload goes through the
tolerant extractors in ``structured`` and every failure degrades into an
artifact instead of aborting the run.
"""
