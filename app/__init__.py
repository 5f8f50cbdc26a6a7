"""
PlayPulse application package.

  app/services/  business logic: session reconciliation, library edits,
                 daily playtime stats.
  app/events.py  the library-changed publish/subscribe channel.

Services receive the ``database`` module (and, for sessions, a presence
client) in ``__init__``; the Flask app in ``playpulse_web.py`` and the CLI in
``playpulse_cli.py`` create the instances and own the event channel.
"""
