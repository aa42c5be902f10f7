#!/usr/bin/env python3
"""
Demo: Tool calling.

Declares a get_weather tool and lets the model decide whether to call it.
Arguments are validated against the tool's parameters before they are
returned.

Usage:
    python examples/demo_tools.py models/qwen2.5-0.5b-instruct-q4_k_m.gguf
"""

import json
import sys

from pocket_llama import ToolCallError, init_llama

WEATHER_TOOL = {
    "type": "function",
    "function": {
        "name": "get_weather",
        "description": "Get the current weather for a city",
        "parameters": {
            "type": "object",
            "properties": {
                "city": {"type": "string"},
                "unit": {"type": "string", "enum": ["celsius", "fahrenheit"]},
            },
            "required": ["city"],
        },
    },
}


def main():
    if len(sys.argv) < 2:
        print("usage: demo_tools.py MODEL.gguf")
        sys.exit(2)

    with init_llama({"model": sys.argv[1]}) as llama:
        print(f"Chat template: {llama.detect_template([{'role': 'user', 'content': 'hi'}])}")

        try:
            result = llama.completion({
                "messages": [{"role": "user", "content": "What's the weather like in Oslo?"}],
                "tools": [WEATHER_TOOL],
                "tool_choice": "auto",
                "temperature": 0,
                "max_tokens": 128,
            })
        except ToolCallError as e:
            print(f"✗ {e.message}")
            sys.exit(1)

    if result.tool_calls:
        for call in result.tool_calls:
            print(f"→ {call.name}({json.dumps(json.loads(call.arguments))})  [{call.id}]")
    else:
        print(result.content)


if __name__ == "__main__":
    main()
