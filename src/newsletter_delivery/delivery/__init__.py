"""Issue delivery queue: claim protocol, executor and worker loop.

The store is the only synchronization point between workers. A worker claims
one task with a conditional lease update, sends the issue to that recipient,
and deletes the task; an aborted attempt releases the lease, and a crashed
worker's lease simply expires. Delivery is therefore at-least-once: a crash
between a successful send and the delete produces a duplicate send.
"""
