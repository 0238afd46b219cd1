"""Shell integration state: what the user's terminal is doing right now.

The shell hook reports `preexec`, `precmd` and `chpwd` events through
`context-update` requests. `ContextEngine` keeps the latest working
directory, git state and a ring of recent commands. `classify_command`
turns notable commands into task-scoped memory events.
"""
