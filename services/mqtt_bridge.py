import os, json, ssl, logging
from typing import Optional

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

class MqttBridge:
    """Retour matériel (LED, buzzer, guirlande...) sur les événements de la partie.

    Désactivé si aucun broker n'est configuré ; une connexion ratée désactive
    le pont pour le reste du processus.
    """
    def __init__(self, url: Optional[str] = None, port: int = 1883, tls: bool = False,
                 prefix: str = "puzzle", disabled: bool = False):
        self.url = url
        self.port = port
        self.tls = tls
        self.prefix = prefix
        self.disabled = disabled or not url
        self._client = None
        self._failed = False

    @classmethod
    def from_env(cls) -> "MqttBridge":
        return cls(
            url=os.getenv("MQTT_URL") or None,
            port=int(os.getenv("MQTT_PORT", "1883")),
            tls=os.getenv("MQTT_TLS", "false").lower() == "true",
            prefix=os.getenv("MQTT_PREFIX", "puzzle"),
            disabled=os.getenv("MQTT_DISABLED", "0").lower() in ("1", "true", "yes"),
        )

    @property
    def enabled(self) -> bool:
        return not self.disabled and not self._failed

    def _ensure(self):
        if not self.enabled:
            return None
        if self._client:
            return self._client
        try:
            c = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            if self.tls:
                c.tls_set(cert_reqs=ssl.CERT_REQUIRED)
                port = 8883
            else:
                port = self.port
            c.connect(self.url, port, keepalive=60)
            c.loop_start()
            self._client = c
            return self._client
        except (OSError, ValueError) as e:
            self._failed = True
            logger.warning("MQTT disabled: %s", e)
            return None

    def _pub(self, topic: str, payload: dict):
        c = self._ensure()
        if not c:
            return
        info = c.publish(topic, json.dumps(payload), qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("MQTT publish to %s failed: rc=%s", topic, info.rc)

    def piece_unlocked(self, game: str, piece: int, unlocked: int, total: int):
        self._pub(f"{self.prefix}/{game}/piece", {"piece": int(piece), "unlocked": unlocked, "total": total})

    def puzzle_complete(self, game: str):
        self._pub(f"{self.prefix}/{game}/complete", {"complete": True})

    def game_reset(self, game: str):
        self._pub(f"{self.prefix}/{game}/reset", {"reset": True})

    def close(self):
        if self._client:
            self._client.loop_stop()
            self._client.disconnect()
            self._client = None
