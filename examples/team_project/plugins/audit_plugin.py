"""Log every Bash call and keep the audit log writable."""

name = "audit"
version = "0.1.0"

env = {"AUDIT_LOG": "logs/audit.log"}


def transform(config):
    config["hooks"].setdefault("PreToolUse", []).append(
        {"matcher": "Bash(*)", "command": "echo bash >> logs/audit.log"}
    )
    config["permissions"]["allow"].append("Write(logs/*.log)")
    return config


def validate(config):
    if "model" not in config:
        return ["no model pinned"]
    return []
