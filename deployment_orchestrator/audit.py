import json

from .logger import get_logger
from .models import Transition


class JsonLinesSink:
    """Appends one JSON object per audit event to a file"""

    def __init__(self, path):
        self.path = path

    def __call__(self, event):
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event, sort_keys=True) + "\n")

    @staticmethod
    def read(path, deployment_id=None):
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                event = json.loads(line)
                if deployment_id is None or event["deployment_id"] == deployment_id:
                    yield event


class LoggingSink:
    def __init__(self):
        self.logger = get_logger("audit")

    def __call__(self, event):
        kind = event["event"]
        if kind == "submitted":
            self.logger.info(f"[{event['deployment_id']}] submitted: {event['strategy_kind']} "
                             f"{event['service_name']} -> {event['target_version']}")
            return
        message = (f"[{event['deployment_id']}#{event['seq']}] {kind}: "
                   f"{event['from_state']} -> {event['to_state']} {event['reason']}").rstrip()
        if kind == "checkpoint":
            self.logger.debug(f"{message} {event['effects']}")
        else:
            self.logger.info(message)


class AuditTrail:
    """Append-only record of every deployment and its transitions.

    A deployment is written once when it is submitted. Each transition is
    written as an intent before anything is done, as a checkpoint after each
    effect lands, and once more when it has been fully applied. Sinks see
    all of them, and the controller can rebuild its state from them.
    """

    def __init__(self, sinks=None):
        self.sinks = list(sinks or [])
        self._submissions = {}  # deployment_id -> submitted event
        self._entries = []

    def add_sink(self, sink):
        self.sinks.append(sink)

    def submitted(self, deployment):
        event = deployment.to_dict()
        del event["history"]
        event["event"] = "submitted"
        self._submissions[deployment.deployment_id] = event
        for sink in self.sinks:
            sink(dict(event))

    def record(self, deployment, to_state, step, reason=""):
        transition = Transition(
            seq=len(deployment.history) + 1,
            deployment_id=deployment.deployment_id,
            from_state=deployment.state,
            to_state=to_state,
            step=step,
            reason=reason or step.reason,
        )
        deployment.history.append(transition)
        self._entries.append((deployment.service_name, transition))
        self._emit("intent", deployment.service_name, transition)
        return transition

    def checkpoint(self, deployment, transition):
        """Effects recorded so far, or the error that abandoned the intent"""
        self._emit("checkpoint", deployment.service_name, transition)

    def mark_applied(self, deployment, transition):
        transition.applied = True
        self._emit("applied", deployment.service_name, transition)

    def adopt(self, deployment):
        """Take in a deployment rebuilt from earlier events, without writing them again"""
        event = deployment.to_dict()
        del event["history"]
        event["event"] = "submitted"
        self._submissions[deployment.deployment_id] = event
        for transition in deployment.history:
            self._entries.append((deployment.service_name, transition))

    def export(self, deployment_id=None):
        """Submissions first, then transitions in the order they were recorded"""
        for submitted_id, event in self._submissions.items():
            if deployment_id is None or submitted_id == deployment_id:
                yield dict(event)
        for service_name, transition in self._entries:
            if deployment_id is None or transition.deployment_id == deployment_id:
                yield self._event("transition", service_name, transition)

    def __len__(self):
        return len(self._entries)

    def _emit(self, kind, service_name, transition):
        event = self._event(kind, service_name, transition)
        for sink in self.sinks:
            sink(event)

    @staticmethod
    def _event(kind, service_name, transition):
        event = transition.to_dict()
        event["event"] = kind
        event["service_name"] = service_name
        return event
