"""
IronHeart - heart rate to OSC bridge for avatar parameters.

Modules:
    status: Canonical heart rate status and battery level
    twitcher: Twitch detection from beat-to-beat intervals
    measurement: BLE Heart Rate Measurement decoding
    bus: Bounded publish/subscribe bus connecting sources to consumers
    actor: Cooperative shutdown helpers shared by all actors
    sources: BLE monitor and WebSocket ingest sources
    simulator: Synthetic source and WebSocket test emitter
    scan: BLE heart rate monitor discovery
    osc: OSC address table, bundle encoding, UDP sender
    transmitter: OSC transmission actor (heartbeat pulse, disconnect hiding)
    recorder: CSV session log and BPM text file
    config: YAML configuration and validation
    app, cli: Application wiring and command-line entry point
"""

__version__ = "0.1.0"

# Note: Modules are imported on-demand so python -m ironheart.simulator.emitter
# works without pulling in bleak.
# Use: from ironheart import bus, osc, transmitter, etc.
