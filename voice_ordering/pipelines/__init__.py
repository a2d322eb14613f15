"""Speech-to-text, response generation and text-to-speech components."""
