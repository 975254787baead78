"""RSS Feed Digest: scheduled feed polling, AI summaries and email delivery."""
