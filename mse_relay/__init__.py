"""
mse-relay — Media Sequencer control link & on-air state relay.

Modules:
  protocol/ — PepTalk frame tokenizer & message interpreter
  core/     — MSE connection manager, on-air state, channel pool
  api/      — FastAPI REST + WebSocket bridge
  config/   — Settings, env loading, YAML config
"""

__version__ = "1.0.0"
