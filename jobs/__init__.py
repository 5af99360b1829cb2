"""
Execution Gate - Jobs Module

Offline jobs for the execution gate:
- reconcile_credits: One finalizer sweep over submitted cross-chain credits

Reliability Level: Offline Job (Cold Path)
"""
