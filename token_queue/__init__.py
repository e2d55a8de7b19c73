"""Service-queue ticketing core (token issuance, ordering and counters).

The package has two layers:
- the in-process core (`TokenService` and the engine modules it wires
  together), which request handlers call directly and which is tested
  without any broker;
- an MQTT service around it (`manager`), plus counter agents, a kiosk
  client, an arrival generator and a one-command runner for local demos.

See README for how to run.
"""
