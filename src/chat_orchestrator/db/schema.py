# schema.py

SCHEMA = {
    "conversations": {
        "columns": {
            "id": "TEXT PRIMARY KEY",
            "title": "TEXT",
            "mode": "TEXT",
            "selected_agents_json": "TEXT",
            "budget_cents": "REAL NOT NULL DEFAULT 500",
            "spent_cents": "REAL NOT NULL DEFAULT 0",
            "created_at": "TEXT",
        },
    },

    "messages": {
        "columns": {
            # seq gives a stable append order independent of clock resolution
            "seq": "INTEGER PRIMARY KEY AUTOINCREMENT",
            "id": "TEXT NOT NULL UNIQUE",
            "conv_id": "TEXT NOT NULL",
            "role": "TEXT NOT NULL",
            "content": "TEXT NOT NULL",
            "agent_id": "TEXT",
            "step": "INTEGER",
            "tokens": "INTEGER NOT NULL DEFAULT 0",
            "cost_cents": "REAL NOT NULL DEFAULT 0",
            "provider_used": "TEXT",
            "created_at": "TEXT",
        },
        "constraints": {
            "foreign_keys": [
                {
                    "column": "conv_id",
                    "references": "conversations(id)",
                    "on_delete": "CASCADE",
                }
            ],
        },
        "indexes": {
            "idx_messages_conv": "conv_id, seq",
        },
    },

    "providers": {
        "columns": {
            "code": "TEXT PRIMARY KEY",
            "name": "TEXT",
            "kind": "TEXT NOT NULL DEFAULT 'openai'",
            "base_url": "TEXT",
            # literal key or "env:NAME"
            "credential": "TEXT",
            "active": "INTEGER NOT NULL DEFAULT 1",
            "position": "INTEGER NOT NULL DEFAULT 0",
        },
    },

    "models": {
        "columns": {
            "provider_code": "TEXT NOT NULL",
            "code": "TEXT NOT NULL",
            "context_length": "INTEGER NOT NULL DEFAULT 8192",
            "max_tokens": "INTEGER NOT NULL DEFAULT 4096",
            "capabilities_json": "TEXT",
            "model_class": "TEXT",
            "pricing_json": "TEXT",
            "active": "INTEGER NOT NULL DEFAULT 1",
        },
        "constraints": {
            "primary_key": "provider_code, code",
            "foreign_keys": [
                {
                    "column": "provider_code",
                    "references": "providers(code)",
                    "on_delete": "CASCADE",
                }
            ],
        },
    },

    "agents": {
        "columns": {
            "role_tag": "TEXT PRIMARY KEY",
            "name": "TEXT",
            "prompt_template": "TEXT NOT NULL",
            "provider_id": "TEXT NOT NULL",
            "model_id": "TEXT NOT NULL",
            "temperature": "REAL NOT NULL DEFAULT 0.7",
            "max_tokens": "INTEGER NOT NULL DEFAULT 1000",
            "sort_order": "INTEGER NOT NULL DEFAULT 0",
            "enabled": "INTEGER NOT NULL DEFAULT 1",
            "description": "TEXT",
        },
    },

    "flows": {
        "columns": {
            "name": "TEXT PRIMARY KEY",
            "mode": "TEXT",
            "steps_json": "TEXT NOT NULL",
            "description": "TEXT",
            "enabled": "INTEGER NOT NULL DEFAULT 1",
            "timestamp": "TEXT",
        },
    },

    "scene_analyzers": {
        "columns": {
            "name": "TEXT PRIMARY KEY",
            "provider_id": "TEXT NOT NULL",
            "model_id": "TEXT NOT NULL",
            "is_default": "INTEGER NOT NULL DEFAULT 0",
            "is_active": "INTEGER NOT NULL DEFAULT 1",
            "system_prompt": "TEXT",
            "temperature": "REAL NOT NULL DEFAULT 0.1",
            "max_tokens": "INTEGER NOT NULL DEFAULT 200",
        },
    },

    "settings": {
        "columns": {
            "key": "TEXT PRIMARY KEY",
            "value": "TEXT",
        },
    },
}
