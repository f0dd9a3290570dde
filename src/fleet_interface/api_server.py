"""
FastAPI Server for the Fleet Interface

This module provides the operator REST API: fleet and agent status plus the
operator commands of the fleet controller. It is served by uvicorn on a
background thread next to the controller's main loop.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, status
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .models import APIResponse


def _respond(message: str, data: Any = None, success: bool = True) -> JSONResponse:
    body = APIResponse(success=success, message=message, data=jsonable_encoder(data))
    return JSONResponse(content=jsonable_encoder(body))


class FleetAPIServer:
    """FastAPI server exposing a fleet controller."""

    def __init__(self, controller, config: Dict[str, Any]):
        """
        Initialize the API server.

        Args:
            controller: The FleetController to expose
            config: The ``api`` configuration section
        """
        self.controller = controller
        self.config = config
        self.logger = logging.getLogger(__name__)

        # API configuration
        self.host = config.get("host", "127.0.0.1")
        self.port = config.get("port", 8080)
        self.debug = config.get("debug", False)

        # Create FastAPI app
        self.app = FastAPI(
            title="PiFleet API",
            description="Operator API for the PiFleet runner fleet",
            version="1.0.0",
            debug=self.debug,
        )

        # Add CORS middleware
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=config.get("cors_origins", ["*"]),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        # Register routes
        self._register_routes()

        # Server state
        self._server = None
        self._thread: Optional[threading.Thread] = None

    def _agent_or_404(self, runner_id: UUID):
        agent_status = self.controller.get_agent_status(runner_id)
        if agent_status is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Unknown runner {runner_id}",
            )
        return agent_status

    def _register_routes(self) -> None:
        """Register API routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            return {
                "status": "healthy" if self.controller.is_healthy else "degraded",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

        @self.app.get("/api/fleet")
        async def get_fleet():
            """Get overall fleet status."""
            return _respond("Fleet status", self.controller.get_fleet_status())

        @self.app.get("/api/agents")
        async def get_agents():
            """Get status of every known agent."""
            return _respond("Agent statuses", self.controller.get_all_agent_statuses())

        @self.app.get("/api/agents/{runner_id}")
        async def get_agent(runner_id: UUID):
            """Get status of one agent."""
            return _respond("Agent status", self._agent_or_404(runner_id))

        @self.app.get("/api/agents/{runner_id}/results")
        async def get_agent_results(runner_id: UUID, limit: int = 20):
            """Get an agent's most recent execution results."""
            self._agent_or_404(runner_id)
            agent = self.controller.get_agent(runner_id)
            results = agent.recent_results(limit) if agent is not None else []
            return _respond("Recent results", results)

        @self.app.get("/api/alerts")
        async def get_alerts(level: Optional[str] = None):
            """Get recent operator alerts, newest last."""
            alerts = self.controller.get_alerts()
            if level:
                alerts = [alert for alert in alerts if alert.level == level]
            return _respond("Alerts", alerts)

        # Commands that wait for agents are plain functions so they run in the threadpool

        @self.app.post("/api/agents/{runner_id}/clear")
        def clear_agent(runner_id: UUID):
            """Clear an agent's errors and recover it if offline."""
            self._agent_or_404(runner_id)
            self.controller.clear_agent(runner_id)
            return _respond(f"Agent {runner_id} cleared")

        @self.app.post("/api/agents/{runner_id}/stop")
        def stop_agent(runner_id: UUID):
            """Stop an agent until it is restarted."""
            self._agent_or_404(runner_id)
            stopped = self.controller.stop_agent(runner_id)
            return _respond(
                f"Agent {runner_id} {'stopped' if stopped else 'did not stop gracefully'}",
                {"stopped": stopped},
                success=stopped,
            )

        @self.app.post("/api/agents/{runner_id}/restart")
        def restart_agent(runner_id: UUID):
            """Restart an agent."""
            try:
                started = self.controller.restart_agent(runner_id)
            except KeyError:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail=f"Unknown runner {runner_id}",
                )
            return _respond(
                f"Agent {runner_id} {'restarted' if started else 'restart deferred'}",
                {"started": started},
            )

        @self.app.post("/api/hosts/{host_id}/clear")
        def clear_host(host_id: str):
            """Bring an offline host back."""
            if not self.controller.clear_host(host_id):
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail=f"Unknown host {host_id}",
                )
            return _respond(f"Host {host_id} cleared")

        @self.app.post("/api/reconcile")
        def reconcile():
            """Run one reconcile pass now."""
            started = self.controller.reconcile()
            return _respond("Reconciled", {"started": started})

    def start(self) -> bool:
        """Start the API server on a background thread."""
        try:
            from uvicorn.config import Config
            from uvicorn.server import Server

            config = Config(
                app=self.app,
                host=self.host,
                port=self.port,
                log_level="debug" if self.debug else "info",
                access_log=self.debug,
            )

            self._server = Server(config=config)
            self._thread = threading.Thread(
                target=self._server.run, name="api_server", daemon=True
            )
            self._thread.start()
            self.logger.info(f"API server listening on {self.host}:{self.port}")
            return True

        except Exception as e:
            self.logger.error(f"Failed to start API server: {e}")
            self._server = None
            return False

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the API server."""
        if self._server:
            self._server.should_exit = True
            if self._thread is not None:
                self._thread.join(timeout)
            self.logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if server is running."""
        return self._thread is not None and self._thread.is_alive()
