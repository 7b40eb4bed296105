import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from jsonschema import Draft7Validator
from jsonschema.exceptions import ValidationError

from simulators.field_node_sim.lib.configparser import FieldNodeParser
from simulators.field_node_sim.lib.control import ControlAuthority, ControlDirective
from simulators.field_node_sim.lib.field_node_sim import now_iso

LOG = logging.getLogger("field_node_sim.bridge")

ACTION_FORCE_PUMP = "FORCE_PUMP"
ACTION_ROTATE_CLINOSTAT = "ROTATE_CLINOSTAT"
ACTION_ENABLE_ARRAY = "ENABLE_40KHZ_ARRAY"

DEFAULT_CLINOSTAT_RPM = 30.0


def parse_command(payload: Dict[str, Any]) -> Optional[ControlDirective]:
    """
    Translate a decoded command message into a directive.
    Returns None for unrecognized actions.
    """
    action = str(payload.get("action", "")).strip().upper()
    if action == ACTION_FORCE_PUMP:
        return ControlDirective(force_pump=True)
    if action == ACTION_ROTATE_CLINOSTAT:
        rpm = payload.get("rpm")
        rpm = DEFAULT_CLINOSTAT_RPM if rpm is None else float(rpm)
        if not math.isfinite(rpm) or rpm < 0.0:
            raise ValueError(f"rpm must be a finite non-negative number, got {rpm}")
        return ControlDirective(clinostat_rpm=rpm)
    if action == ACTION_ENABLE_ARRAY:
        return ControlDirective(array_enable=True)
    return None


class CommandChannel:
    """
    MQTT subscriber for remote commands. Recognized commands are handed to the
    ControlAuthority as pending directives; arrival is independent of tick cadence.
    """

    def __init__(self, authority: ControlAuthority, config_file: str = "config.ini"):
        self.authority = authority
        self.config_file = config_file

        self._broker_host: Optional[str] = None
        self._broker_port: Optional[int] = None
        self._client_id: Optional[str] = None
        self._retain_status: bool = True

        self._command_topic: Optional[str] = None
        self._status_topic: Optional[str] = None

        self._validate_schema: bool = True
        self._schema_path: Optional[str] = None
        self._validator: Optional[Draft7Validator] = None

        self._log_messages: bool = False

        self.client: Optional[mqtt.Client] = None
        self.received = 0
        self.dropped = 0

    @property
    def broker_host(self) -> Optional[str]:
        return self._broker_host

    @broker_host.setter
    def broker_host(self, val: str) -> None:
        if not isinstance(val, str):
            raise TypeError("broker_host must be a string")
        self._broker_host = val

    @property
    def broker_port(self) -> Optional[int]:
        return self._broker_port

    @broker_port.setter
    def broker_port(self, val: int) -> None:
        if not isinstance(val, int) or val <= 0:
            raise TypeError("broker_port must be a positive integer")
        self._broker_port = val

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @client_id.setter
    def client_id(self, val: str) -> None:
        if not isinstance(val, str):
            raise TypeError("client_id must be a string")
        self._client_id = val

    @property
    def retain_status(self) -> bool:
        return self._retain_status

    @retain_status.setter
    def retain_status(self, val: bool) -> None:
        if not isinstance(val, bool):
            raise TypeError("retain_status must be a boolean")
        self._retain_status = val

    def _check_topic(self, v: str) -> str:
        if not isinstance(v, str) or len(v.strip()) == 0:
            raise TypeError("topic must be a non-empty string")
        return v

    @property
    def command_topic(self) -> Optional[str]:
        return self._command_topic

    @command_topic.setter
    def command_topic(self, val: str) -> None:
        self._command_topic = self._check_topic(val)

    @property
    def status_topic(self) -> Optional[str]:
        return self._status_topic

    @status_topic.setter
    def status_topic(self, val: str) -> None:
        self._status_topic = self._check_topic(val)

    @property
    def validate_schema(self) -> bool:
        return self._validate_schema

    @validate_schema.setter
    def validate_schema(self, val: bool) -> None:
        if not isinstance(val, bool):
            raise TypeError("validate_schema must be a boolean")
        self._validate_schema = val

    @property
    def log_messages(self) -> bool:
        return self._log_messages

    @log_messages.setter
    def log_messages(self, val: bool) -> None:
        if not isinstance(val, bool):
            raise TypeError("log_messages must be a boolean")
        self._log_messages = val


    def read_config(self) -> None:
        parser = FieldNodeParser(self.config_file)

        broker = parser.get_broker_cfg()
        self.broker_host = broker["host"]
        self.broker_port = broker["port"]

        self.client_id = parser.parse_client_id()
        self.retain_status = parser.parse_retain_status()

        topics = parser.get_topics_map()
        self.command_topic = topics.get("command_topic")
        self.status_topic = topics.get("status_topic")

        self.validate_schema = parser.parse_validate_schema()
        self._schema_path = parser.parse_schema_path()
        self.log_messages = parser.parse_log_messages()

        if self.validate_schema:
            self._load_schema()


    def _load_schema(self) -> None:
        try:
            schema_file = Path(self._schema_path)
            if not schema_file.is_file():
                cfg_dir = Path(self.config_file).resolve().parent
                candidate = cfg_dir / self._schema_path
                if candidate.is_file():
                    schema_file = candidate
                else:
                    schema_file = Path(__file__).resolve().parent.parent / self._schema_path

            with schema_file.open("r", encoding="utf-8") as fh:
                top_spec = json.load(fh)
        except (OSError, ValueError) as e:
            LOG.error("Failed to open schema file '%s': %s. Disabling schema validation.", self._schema_path, e)
            self.validate_schema = False
            return

        tinfo = top_spec.get("topics", {}).get(self.command_topic)
        schema = tinfo.get("schema") if isinstance(tinfo, dict) else None
        if not schema:
            LOG.error("No schema for topic %s in %s. Disabling validation.", self.command_topic, self._schema_path)
            self.validate_schema = False
            return

        self._validator = Draft7Validator(schema)
        LOG.info("Loaded command schema for topic %s from %s", self.command_topic, schema_file)


    def _setup_mqtt_client(self) -> None:
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id, clean_session=True)
        lwt_payload = json.dumps({"status": "offline", "ts": now_iso()})
        self.client.will_set(self.status_topic, payload=lwt_payload, qos=1, retain=True)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message


    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        if reason_code.is_failure:
            LOG.error("MQTT connect failed with rc=%s", reason_code)
            return
        LOG.info("Connected to broker %s:%s", self.broker_host, self.broker_port)
        client.subscribe(self.command_topic, qos=1)
        LOG.info("Subscribed to command topic %s", self.command_topic)
        if self.retain_status:
            payload = json.dumps({"status": "online", "ts": now_iso()})
            client.publish(self.status_topic, payload=payload, qos=1, retain=True)


    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        LOG.warning("Disconnected from broker (rc=%s)", reason_code)


    def _drop(self, reason: str, *args) -> None:
        self.dropped += 1
        LOG.warning(reason, *args)


    def _on_message(self, client, userdata, msg):
        topic = msg.topic
        if topic != self.command_topic:
            LOG.debug("Received message on unknown topic %s; ignoring", topic)
            return

        try:
            text = msg.payload.decode("utf-8")
        except UnicodeDecodeError:
            self._drop("Received non-decodable payload on topic %s; discarding", topic)
            return

        try:
            payload = json.loads(text)
        except ValueError:
            self._drop("Received non-JSON payload on %s; discarding. Head: %.200s", topic, text[:200])
            return
        if not isinstance(payload, dict):
            self._drop("Received JSON that is not an object on %s; discarding", topic)
            return

        if self.log_messages:
            LOG.info("RECV_PAYLOAD %s %s", topic, json.dumps(payload, separators=(",", ":"), ensure_ascii=False))

        if self.validate_schema and self._validator is not None:
            try:
                self._validator.validate(payload)
            except ValidationError as ve:
                self._drop("Schema validation failed for topic %s: %s", topic, ve.message)
                return

        try:
            directive = parse_command(payload)
        except (TypeError, ValueError) as e:
            self._drop("Malformed %s command on %s: %s", payload.get("action"), topic, e)
            return
        if directive is None:
            LOG.debug("Ignoring unrecognized action %r", payload.get("action"))
            return

        self.received += 1
        LOG.info("Command %s accepted", payload.get("action"))
        self.authority.submit(directive)


    def start(self) -> None:
        """Connect and start the network thread. Returns immediately."""
        if self.command_topic is None:
            raise RuntimeError("Command channel not configured. Call read_config() first.")
        self._setup_mqtt_client()
        LOG.info("Connecting command channel to %s:%d", self.broker_host, self.broker_port)
        self.client.connect_async(self.broker_host, self.broker_port, keepalive=60)
        self.client.loop_start()


    def stop(self) -> None:
        LOG.info("Stopping command channel: publishing offline status and disconnecting")
        if self.client is None:
            return
        if self.retain_status:
            payload = json.dumps({"status": "offline", "ts": now_iso()})
            try:
                self.client.publish(self.status_topic, payload=payload, qos=1, retain=True)
            except (OSError, ValueError):
                LOG.debug("Failed to publish offline status")
        try:
            self.client.disconnect()
            self.client.loop_stop()
        except OSError as e:
            LOG.debug("Exception while disconnecting: %s", e)
