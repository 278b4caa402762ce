"""
FlowTask follow-up reminders backend package.
"""
