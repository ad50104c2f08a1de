"""
Telemetry pipeline: batch buffer, identity context, retry policy,
sync status and the scheduler that supervises them.
"""
