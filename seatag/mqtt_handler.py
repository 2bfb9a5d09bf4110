# MQTT ingestion bridge: device gateways may publish payloads to
# {base}/<gateway>/alerts instead of POSTing them.
import json, time, logging
from typing import Callable

import paho.mqtt.client as mqtt

from .schemas import AlertSubmission
from .settings import Settings

log = logging.getLogger("mqtt")


def _rc_int(rc) -> int:
    # Handles paho v2.x ReasonCode objects or plain ints
    try:
        return int(getattr(rc, "value", rc))
    except (TypeError, ValueError):
        return -1


def parse_message(payload: bytes) -> AlertSubmission | None:
    """Body is either the bare pipe payload or JSON {status?, payload}."""
    text = payload.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            return None
        if not isinstance(body, dict):
            return None
        return AlertSubmission(status=body.get("status"), payload=body.get("payload"))
    return AlertSubmission(payload=text)


def start_mqtt(settings: Settings, submit: Callable[[AlertSubmission], None]) -> mqtt.Client:
    """Connect and subscribe; ``submit`` is called from paho's network thread."""
    client = mqtt.Client(
        client_id=f"seatag-api-{int(time.time())}",
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
    )
    client.enable_logger(log)

    if settings.mqtt_username and settings.mqtt_password:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)

    client.reconnect_delay_set(min_delay=1, max_delay=30)
    topic = f"{settings.mqtt_topic_base}/+/alerts"

    def on_connect(client, userdata, flags, reason_code, properties):
        rc = _rc_int(reason_code)
        if rc != mqtt.CONNACK_ACCEPTED:
            log.warning("Connect failed rc=%s, retrying", rc)
            return
        res, mid = client.subscribe(topic, qos=0)
        log.info("Connected, SUB %s res=%s mid=%s", topic, res, mid)

    def on_disconnect(client, userdata, flags, reason_code, properties):
        log.warning("Disconnected rc=%s, reconnecting", _rc_int(reason_code))

    def on_message(client, userdata, msg):
        submission = parse_message(msg.payload or b"")
        if submission is None:
            log.warning("Ignoring unreadable message on %s: %r", msg.topic, msg.payload)
            return
        submit(submission)

    client.on_connect = on_connect
    client.on_disconnect = on_disconnect
    client.on_message = on_message

    log.info(
        "Bootstrapping host=%s port=%s user=%s topic=%s",
        settings.mqtt_host, settings.mqtt_port,
        "<set>" if settings.mqtt_username else "<none>", topic,
    )
    client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=30)
    client.loop_start()
    return client
