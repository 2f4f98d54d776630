"""Chat transport adapters. Import concrete channels lazily; they pull in optional deps."""
