from cursor_bridge.api.routes import register_bridge_routes

__all__ = ["register_bridge_routes"]
