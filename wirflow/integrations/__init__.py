"""wirflow.integrations — collaborators the lifecycle engine talks to.

Each module exposes a class plus a module-level instance:
  - persistence_gateway   records, items, runs, history, attachment rows
  - attachment_storage    evidence file bytes
  - checklist_catalog     reference checklist templates (dispatch only)
  - identity_directory    project membership and base roles

Services accept ``gateway=`` / ``catalog=`` so tests can pass doubles.
"""
