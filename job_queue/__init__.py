"""
Dispatch Queue — ordered, deduplicating, delayed delivery of Job Messages.

- Dispatcher SENDS one job per record, spread over the day
- Consumer PROCESSES jobs (fan-out to A and B, persist, classify)
- Worker SETTLES each message: ack on success/terminal failure, release on retry
- Supports Redis (production) and an in-process queue (dev/test)
"""
