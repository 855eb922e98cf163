"""Engine-wide building blocks shared by services and blueprints."""
