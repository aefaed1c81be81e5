"""
Services module for the scan pipeline.

Contains:
- quota_manager: Monthly per-provider quota admission
- retry_policy: Bounded exponential backoff
- scan_queue: Scan queue item state machine
- scheduler: Automation settings and next-run computation
- batch_processor: Claims and runs one batch of scans
- discovery_orchestrator: Multi-source business discovery
- sample_data: Flagged sample businesses for total discovery failure
"""
