"""sinkrelay delivery routing — dispatch, retry and concrete sinks.

Ready batches are handed to the ``DeliveryDispatcher``, which serializes
delivery per destination key and runs different keys concurrently.  The
``DeliveryWorker`` transmits each batch through the sink registered for
its destination type, retrying transient failures with backoff, and
reports the terminal outcome.
"""
