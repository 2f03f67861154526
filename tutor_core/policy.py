"""
Policy Module (Centralized Timeouts, Windows & Canned Text)

Constants only. No side effects. No imports from other tutor_core modules.
"""

# Response service timeouts
LLM_TIMEOUT_SECONDS = 30
LLM_WATCHDOG_SECONDS = 35

# Primary (networked) synthesis must start within this budget or we fall back
TTS_TIMEOUT_SECONDS = 10
TTS_WATCHDOG_SECONDS = 12

# Activity
IDLE_THRESHOLD_SECONDS = 60

# Conversation store bounds
CONVERSATION_MAX_ENTRIES = 20
CONVERSATION_MAX_AGE_SECONDS = 3600
CONVERSATION_SWEEP_INTERVAL_SECONDS = 300
CONTEXT_HISTORY_ENTRIES = 8
CONTEXT_TRUNCATE_CHARS = 500
FRESH_INTERACTION_SECONDS = 30

# Admission windows
EMOTION_RATE_LIMIT_SECONDS = 15
IDLE_RATE_LIMIT_SECONDS = 300
EMOTION_CONFIDENCE_THRESHOLD = 0.4
EMOTION_RECENCY_SECONDS = 60

# Queue drain / chat context
QUEUE_DRAIN_DELAY_SECONDS = 1.0
CHAT_CONTEXT_RESET_SECONDS = 10

# Sources
AVATAR_SOURCE = "avatar"
CONVERSATION_SOURCE = "conversation-manager"

# Fallback utterance when the response service fails (short, in character)
FALLBACK_RESPONSE = (
    "Oops, my circuits got a bit tangled there! "
    "Give me a moment to recalibrate my stellar wit."
)

# Idle prompts, most specific first
IDLE_PROMPT_DEFAULT = "Ready to continue our cosmic journey?"
IDLE_PROMPT_AFTER_USER = "I'm here when you're ready to continue our conversation!"
IDLE_PROMPT_EMOTION = "I notice you seem {mood} - want to chat about what's on your mind?"

GREETING_PROMPT = "Greet the learner warmly and invite them to start exploring."
