"""Process entrypoints.

These modules are designed to run as:

  python -m iot.app.jobs.offline_check
  python -m iot.app.jobs.mqtt_worker
"""
