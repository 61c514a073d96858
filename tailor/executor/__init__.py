"""Generation engine: sessions, the CV validation-retry loop, and progress.

Takes a job posting (URL or pasted text) and produces a page-constrained CV
plus optional cover letter and cold email, tracked in a session that can
be refined and finally approved (locked).

Architecture:
- orchestrator: sequences one request end to end, in a background thread
- retry_loop: generate -> compile -> measure until the CV hits the page target
- session_manager: session lifecycle, lock guard, chat history, persisted log
- mutations: refine / edit / delete, all behind the single lock guard
- progress: ordered, replayable event stream for observers
- engine_runner: one LLM call with transient-failure retry
- compiler, content_store, link_resolver: collaborators
"""
