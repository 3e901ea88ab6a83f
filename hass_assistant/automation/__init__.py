"""
Automation Tools - Event-driven notifications

Components:
    subscriptions.py: Persistent subscription rules with hot reload
    pipeline.py: Rule matching, bounded queue, prompt -> notification processing
    prompt_runner.py: Claude CLI execution
    listener.py: Daemon wiring everything together

Usage:
    from hass_assistant.automation.listener import EventListener
    from hass_assistant.config import load_settings

    await EventListener(load_settings()).run()
"""
