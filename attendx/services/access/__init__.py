"""
AttendX Access Core
-------------------
Gates every read/write against tenant-scoped resources and every
identity-proving action (email verification, password reset, invitation).

Modules:
  evaluator.py     - RBAC policy evaluator (pure)
  field_guard.py   - narrows an allowed update to the fields that may change (pure)
  policy_table.py  - declarative policy table loaded from policy.yaml
  tokens.py        - single-use verification tokens + issuance throttle
  audit.py         - append-only, hash-chained audit recorder
  service.py       - request-path orchestration: decide, guard, audit
"""
