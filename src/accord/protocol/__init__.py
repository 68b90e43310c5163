"""Request protocol: file records, state machine, history and contracts.

Why plain files and not a queue?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Participants live in separate repositories and only meet through git. A
request is a markdown file with a YAML header; its directory says who owns
it (`comms/inbox/<recipient>/` while open, `comms/archive/` once done), and
git history is the replication log. Everything here is pure file logic so the
daemon, the sync protocol and humans editing files by hand all see the same
state.
"""
