"""Session engine: stream events, transcript, tool-call tracking, dispatch and replay.

Import from the submodules directly (``toolstream.engine.session`` and so on);
this package stays empty so the transport layer can import event types without
pulling in the session.
"""
