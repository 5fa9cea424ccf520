"""
Client-side tracking beacon.

The script is served from GET /analytics.js and posts JSON events to the
tracking endpoint. It sends nothing when Do Not Track is on or the visitor
has opted out via localStorage.

Events sent:
- page load: path, title, referrer, user agent, session id
- every 30s while visible: time update (is_update)
- on pagehide/beforeunload: final time (is_update + is_final) via sendBeacon
- first time an <article class="section"> is half visible in a session:
  section view (is_section)
"""

OPT_OUT_KEY = "watchmans_cry_opt_out"
SECTION_SEEN_PREFIX = "watchmans_cry_section_"
SECTION_SELECTOR = "article.section"
SESSION_KEY = "watchmans_cry_session_id"
UPDATE_INTERVAL_MS = 30000


def tracking_script(endpoint: str = "/api/track") -> str:
    """Generate the beacon JavaScript for the given tracking endpoint."""
    return f'''(function(){{
  "use strict";
  var d=document,w=window,n=navigator,l=location;
  var url="{endpoint}";

  try{{if(w.localStorage.getItem("{OPT_OUT_KEY}")==="true")return;}}catch(_){{}}
  if(n.doNotTrack==="1"||n.doNotTrack==="yes"||w.doNotTrack==="1")return;

  function sessionId(){{
    var id;
    try{{id=w.sessionStorage.getItem("{SESSION_KEY}");}}catch(_){{}}
    if(!id){{
      id="sess_"+Date.now()+"_"+Math.random().toString(36).substr(2,9);
      try{{w.sessionStorage.setItem("{SESSION_KEY}",id);}}catch(_){{}}
    }}
    return id;
  }}

  function send(data,closing){{
    var body=JSON.stringify(data);
    if(closing&&n.sendBeacon){{
      n.sendBeacon(url,new Blob([body],{{type:"application/json"}}));
      return;
    }}
    fetch(url,{{method:"POST",headers:{{"Content-Type":"application/json"}},body:body,keepalive:true}})
      .catch(function(){{}});
  }}

  var start=Date.now(),lastSent=0,timer=null,finalSent=false,seen={{}};

  function elapsed(){{return Math.floor((Date.now()-start)/1000);}}

  function pageView(){{
    send({{
      page_path:l.pathname||"/",
      page_title:d.title||"",
      referrer:d.referrer||"",
      user_agent:n.userAgent||"",
      session_id:sessionId(),
      time_on_page:null
    }});
  }}

  function timeUpdate(){{
    var t=elapsed();
    if(t-lastSent<30)return;
    lastSent=t;
    send({{page_path:l.pathname||"/",session_id:sessionId(),time_on_page:t,is_update:true}});
  }}

  function finalUpdate(){{
    if(finalSent)return;
    finalSent=true;
    clearInterval(timer);
    send({{page_path:l.pathname||"/",session_id:sessionId(),time_on_page:elapsed(),is_update:true,is_final:true}},true);
  }}

  function sectionId(el){{
    var id=el.getAttribute("data-section-id")||el.id;
    if(!id){{
      var h=el.querySelector("h3");
      id=h?h.textContent.trim().toLowerCase().replace(/\\s+/g,"-"):"";
    }}
    return id;
  }}

  function firstView(id){{
    var key="{SECTION_SEEN_PREFIX}"+id;
    try{{
      if(w.sessionStorage.getItem(key))return false;
      w.sessionStorage.setItem(key,"1");
    }}catch(_){{
      if(seen[id])return false;
    }}
    seen[id]=true;
    return true;
  }}

  function watchSections(){{
    if(!("IntersectionObserver" in w))return;
    var io=new IntersectionObserver(function(entries){{
      entries.forEach(function(e){{
        if(!e.isIntersecting)return;
        var id=sectionId(e.target);
        if(!id||!firstView(id))return;
        send({{page_path:(l.pathname||"/")+"#"+id,page_title:d.title||"",session_id:sessionId(),is_section:true}});
      }});
    }},{{threshold:0.5}});
    d.querySelectorAll("{SECTION_SELECTOR}").forEach(function(s){{io.observe(s);}});
  }}

  function init(){{
    pageView();
    timer=setInterval(timeUpdate,{UPDATE_INTERVAL_MS});
    watchSections();
  }}

  if(d.readyState==="loading")d.addEventListener("DOMContentLoaded",init);
  else init();

  w.addEventListener("pagehide",finalUpdate);
  w.addEventListener("beforeunload",finalUpdate);
}})();
'''


def tracking_snippet(script_url: str = "/analytics.js") -> str:
    """HTML tag that loads the beacon, for page templates."""
    return f'<script src="{script_url}" defer></script>'
