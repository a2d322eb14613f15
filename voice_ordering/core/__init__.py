"""Session, conversation and order orchestration for voice ordering."""
