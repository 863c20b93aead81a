"""CSS styles for the agent monitor TUI."""

APP_CSS = """
Screen {
    layout: vertical;
}

#body {
    height: 1fr;
}

#sidebar {
    width: 22;
    height: 100%;
    border: solid $secondary;
    padding: 0 1;
}

#sidebar.hidden {
    display: none;
}

#main-container {
    width: 1fr;
    height: 100%;
}

#tabs {
    height: 100%;
    border: solid $primary;
}

#detail-container {
    width: 45%;
    height: 100%;
    border: solid $secondary;
    padding: 0 1;
}

#message-list, #subagent-list, #error-list {
    height: 1fr;
}

#stats-panel {
    height: 1fr;
    overflow-y: auto;
    padding: 1;
}

#filter-bar {
    height: 1;
    padding: 0 1;
    background: $surface;
}

#feedback-input {
    display: none;
    height: 3;
    border: solid $warning;
    padding: 0 1;
}

#feedback-input.visible {
    display: block;
}

#detail-panel {
    height: 100%;
    overflow-y: auto;
    scrollbar-gutter: stable;
}

#detail-panel:focus {
    border: solid $success;
}

MessageItem, SubagentItem, ErrorItem {
    height: 1;
    padding: 0 1;
}

MessageItem:hover, SubagentItem:hover, ErrorItem:hover {
    background: $surface-lighten-1;
}

ListView:focus > ListItem.-active {
    background: $primary-darken-1;
}

ListView.-has-focus > ListItem.-active {
    background: $primary;
}

Footer {
    background: $surface;
}
"""
