# app/core/dispatch/__init__.py
"""
Crisis dispatch core.

This package owns the volunteer/crisis assignment lifecycle:
- ``eligibility``: which volunteers a crisis is offered to
- ``notifier``: help-request fan-out (one Response per volunteer)
- ``state_machine``: accept / progress / complete / fail, plus admin override
- ``ratings``: rating gate for completed Responses
- ``profiles``: volunteer profile and assignment list
- ``service``: wiring of the above over one set of stores

Stores and the notification channel are injected through the Protocols in
``ports``; nothing here imports the Postgres or HTTP layers at module level.
"""
