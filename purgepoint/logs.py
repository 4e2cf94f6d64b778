"""Structured event logging shared by the engine and the API."""
import json
import time

from .config import settings


def jsonl(event: str, **fields):
    if not settings.jsonl_log:
        return
    try:
        rec = {'ts': time.time(), 'event': event}
        rec.update(fields)
        with open(settings.jsonl_log, 'a') as f:
            f.write(json.dumps(rec, default=str) + '\n')
    except Exception:
        pass


def structured_log(event: str, **fields):
    try:
        if settings.log_json:
            print(json.dumps({"event": event, **fields}, default=str))
        else:
            print(f"[{event}] " + " ".join(f"{k}={v}" for k, v in fields.items()))
    except Exception:
        pass
    jsonl(event, **fields)
