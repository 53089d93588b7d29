# streamlit_app.py
import requests
import streamlit as st

st.set_page_config(page_title="RAGDesk – Streamlit UI", page_icon="💬", layout="centered")

# ---------------- Sidebar ----------------
st.sidebar.title("Settings")
api_base = st.sidebar.text_input("API Base URL", value="http://localhost:8000", help="Your FastAPI server base URL.")
timeout_s = st.sidebar.number_input("Timeout (s)", min_value=5, max_value=300, value=120)

st.title("RAGDesk • Streamlit UI")
st.caption("Ask the library via `/api/chat`. Unanswered questions are handed to a human operator.")

# ---------------- Input ----------------
question = st.text_area(
    "Ask a question",
    placeholder="e.g., What does the library say about daily practice?",
    height=100
)

col1, col2 = st.columns([1, 1])
with col1:
    ask = st.button("Ask", type="primary")
with col2:
    clear = st.button("Clear")

if clear:
    for k in ("last_answer", "last_error"):
        st.session_state.pop(k, None)
    st.rerun()

answer_box = st.empty()

# ---------------- Helpers ----------------
def call_chat(q: str):
    url = f"{api_base.rstrip('/')}/api/chat"
    try:
        resp = requests.post(url, json={"question": q}, timeout=int(timeout_s))
    except requests.exceptions.RequestException as e:
        return None, f"Request failed: {e}"
    if resp.status_code != 200:
        try:
            detail = resp.json().get("detail", resp.text)
        except ValueError:
            detail = resp.text
        # 503 carries a user-facing "busy" message
        return None, detail if resp.status_code == 503 else f"Error {resp.status_code}: {detail}"
    return resp.json().get("answer", ""), None

# ---------------- Action ----------------
if ask and question.strip():
    with st.spinner("Looking it up..."):
        answer, err = call_chat(question.strip())
    if err:
        st.session_state["last_error"] = err
        st.session_state.pop("last_answer", None)
    else:
        st.session_state["last_answer"] = answer
        st.session_state.pop("last_error", None)

# ---------------- Render ----------------
answer = st.session_state.get("last_answer")
if answer:
    # answers may carry a small HTML "read more" link
    answer_box.markdown(answer, unsafe_allow_html=True)

error = st.session_state.get("last_error")
if error:
    st.error(error)

st.markdown("---")
