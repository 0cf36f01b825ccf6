"""
Pipeline schemas.

Pydantic models for everything that crosses a process boundary.

Schemas:
    jobs.py     - Job messages (tagged union on ``type``) and dead-letter entries
    records.py  - Statement and transaction documents in the record store
"""
